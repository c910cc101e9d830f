"""Entry point for CLI invocation via python -m."""

from ArchiveSync.PackageUpload.cli import app

if __name__ == "__main__":
    app()
