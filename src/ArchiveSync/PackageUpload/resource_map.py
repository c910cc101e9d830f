# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.resource_map",
#   "purpose": "Build, serialize, parse, and filter OAI-ORE resource maps for data packages",
#   "sections": [
#     {"id": "vocabulary", "name": "Vocabulary Constants", "anchor": "VOC", "kind": "constants"},
#     {"id": "statement", "name": "Statement", "anchor": "class-statement", "kind": "class"},
#     {"id": "resourcemap", "name": "ResourceMap", "anchor": "class-resourcemap", "kind": "class"},
#     {"id": "generate-resource-map", "name": "generate_resource_map", "anchor": "function-generate-resource-map", "kind": "function"},
#     {"id": "filter-packaging-statements", "name": "filter_packaging_statements", "anchor": "function-filter-packaging-statements", "kind": "function"},
#     {"id": "rdf", "name": "RDF Serialization", "anchor": "RDF", "kind": "infra"}
#   ]
# }
# === /NAVMAP ===

"""Resource maps: the containment graph that ties a data package together.

A resource map states which objects belong to a package and how they relate.
:func:`generate_resource_map` builds the statement set deterministically from
identifiers alone:

1. the metadata object documents itself and is documented by itself, so that
   metadata-only packages are still indexed;
2. the metadata documents each data object, and each data object is
   documented by the metadata;
3. the package aggregation aggregates each child resource map (and the child
   is aggregated by it), and the metadata documents each child map;
4. caller-supplied statements are merged in verbatim;
5. duplicates are removed.

Every identifier is percent-encoded and prefixed with the resolve base, so
subjects and objects are dereferenceable URIs. The statement set is
independent of input order; it is stored sorted so equal inputs also produce
equal tuples.

:func:`serialize_resource_map` renders the map as OAI-ORE RDF with rdflib and
:func:`parse_resource_map` reads one back. :func:`filter_packaging_statements`
strips everything this module generates so that statements added by other
tools (provenance, for example) can be carried into a rebuilt map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union
from urllib.parse import quote

from rdflib import BNode, Graph, Literal, Namespace, URIRef
from rdflib.namespace import DCTERMS, FOAF, RDF, XSD

from .errors import PreconditionError
from .identifiers import generate_resource_map_pid
from .settings import DEFAULT_RESOLVE_BASE

__all__ = [
    "CITO_DOCUMENTS",
    "CITO_IS_DOCUMENTED_BY",
    "ORE_AGGREGATES",
    "ORE_IS_AGGREGATED_BY",
    "DCTERMS_IDENTIFIER",
    "FOAF_NAME",
    "RESOURCE_MAP_FORMAT_ID",
    "CLIENT_AGENT_NAME",
    "CLIENT_AGENT_NAMES",
    "PACKAGING_PREDICATES",
    "Statement",
    "ResourceMap",
    "Serializer",
    "resolve_uri",
    "generate_resource_map",
    "filter_packaging_statements",
    "build_graph",
    "serialize_resource_map",
    "parse_resource_map",
    "statements_from_rows",
]

logger = logging.getLogger(__name__)

# ============================================================================
# Vocabulary Constants (VOC)
# ============================================================================

CITO_NS = "http://purl.org/spar/cito/"
ORE_NS = "http://www.openarchives.org/ore/terms/"

CITO_DOCUMENTS = CITO_NS + "documents"
CITO_IS_DOCUMENTED_BY = CITO_NS + "isDocumentedBy"
ORE_AGGREGATES = ORE_NS + "aggregates"
ORE_IS_AGGREGATED_BY = ORE_NS + "isAggregatedBy"
ORE_DESCRIBES = ORE_NS + "describes"
ORE_IS_DESCRIBED_BY = ORE_NS + "isDescribedBy"
DCTERMS_IDENTIFIER = str(DCTERMS.identifier)
DCTERMS_CREATOR = str(DCTERMS.creator)
FOAF_NAME = str(FOAF.name)
RDF_TYPE = str(RDF.type)

RESOURCE_MAP_FORMAT_ID = "http://www.openarchives.org/ore/terms"
CLIENT_AGENT_NAME = "ArchiveSync Python Client"
CLIENT_AGENT_NAMES: FrozenSet[str] = frozenset({CLIENT_AGENT_NAME, "DataONE R Client"})

PACKAGING_PREDICATES: FrozenSet[str] = frozenset(
    {
        CITO_DOCUMENTS,
        CITO_IS_DOCUMENTED_BY,
        ORE_AGGREGATES,
        ORE_IS_AGGREGATED_BY,
        ORE_DESCRIBES,
        ORE_IS_DESCRIBED_BY,
        DCTERMS_IDENTIFIER,
    }
)
_PACKAGING_TYPES: FrozenSet[str] = frozenset(
    {ORE_NS + "ResourceMap", ORE_NS + "Aggregation", str(DCTERMS.Agent)}
)

_BUILTIN_FIELDS = frozenset({"subject", "predicate", "object", "subjectType", "objectType"})
_OPTIONAL_FIELDS = frozenset({"dataTypeURI"})
_FIELD_ALIASES = {
    "subject_type": "subjectType",
    "object_type": "objectType",
    "data_type_uri": "dataTypeURI",
}

ORE = Namespace(ORE_NS)
CITO = Namespace(CITO_NS)


@dataclass(frozen=True)
class Statement:
    """One RDF triple with its term kinds."""

    subject: str
    predicate: str
    object: str
    subject_type: str = "uri"
    object_type: str = "uri"
    data_type_uri: Optional[str] = None

    def sort_key(self) -> Tuple[str, ...]:
        return (
            self.subject,
            self.predicate,
            self.object,
            self.subject_type,
            self.object_type,
            self.data_type_uri or "",
        )

    def to_mapping(self) -> Dict[str, Optional[str]]:
        return {
            "subject": self.subject,
            "predicate": self.predicate,
            "object": self.object,
            "subjectType": self.subject_type,
            "objectType": self.object_type,
            "dataTypeURI": self.data_type_uri,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "Statement":
        """Build a statement from camelCase or snake_case keys.

        Missing term kinds default to ``"uri"``.
        """

        data = {_FIELD_ALIASES.get(str(key), str(key)): value for key, value in mapping.items()}
        missing = [name for name in ("subject", "predicate", "object") if not data.get(name)]
        if missing:
            raise ValueError(f"statement is missing {', '.join(missing)}")
        data_type = data.get("dataTypeURI")
        return cls(
            subject=str(data["subject"]),
            predicate=str(data["predicate"]),
            object=str(data["object"]),
            subject_type=str(data.get("subjectType") or "uri"),
            object_type=str(data.get("objectType") or "uri"),
            data_type_uri=str(data_type) if data_type else None,
        )


StatementLike = Union[Statement, Mapping[str, Any]]


@dataclass(frozen=True)
class ResourceMap:
    """A package's statement set plus the identifiers it aggregates."""

    identifier: str
    metadata_identifier: str
    statements: Tuple[Statement, ...]
    aggregated_identifiers: Tuple[str, ...]
    resolve_base: str = DEFAULT_RESOLVE_BASE
    warnings: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def statement_set(self) -> FrozenSet[Statement]:
        return frozenset(self.statements)

    @property
    def uri(self) -> str:
        return resolve_uri(self.resolve_base, self.identifier)

    @property
    def aggregation_uri(self) -> str:
        return f"{self.uri}#aggregation"

    def serialize(self, fmt: str = "xml") -> bytes:
        return serialize_resource_map(self, fmt=fmt)


class Serializer(Protocol):
    """Turn a resource map into bytes ready for upload."""

    def __call__(self, resource_map: ResourceMap) -> bytes:
        """Return the serialized form of *resource_map*."""


def resolve_uri(resolve_base: str, identifier: str) -> str:
    """Return the dereferenceable URI for *identifier* under *resolve_base*."""

    return f"{resolve_base.rstrip('/')}/{quote(identifier, safe='')}"


def _unique(values: Optional[Iterable[str]]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values or ():
        if isinstance(value, str) and value:
            seen.setdefault(value, None)
    return list(seen)


def _documents_pair(metadata_uri: str, target_uri: str) -> Tuple[Statement, Statement]:
    return (
        Statement(metadata_uri, CITO_DOCUMENTS, target_uri),
        Statement(target_uri, CITO_IS_DOCUMENTED_BY, metadata_uri),
    )


def _coerce_extra_statements(
    extra_statements: Optional[Iterable[StatementLike]],
) -> Tuple[List[Statement], List[str]]:
    statements: List[Statement] = []
    warnings: List[str] = []
    for item in extra_statements or ():
        if isinstance(item, Statement):
            statements.append(item)
            continue
        if not isinstance(item, Mapping):
            warnings.append(f"skipped extra statement of unsupported type {type(item).__name__}")
            continue
        keys = {_FIELD_ALIASES.get(str(key), str(key)) for key in item}
        keys |= {"subjectType", "objectType"}
        if keys - _OPTIONAL_FIELDS != _BUILTIN_FIELDS:
            warnings.append(
                "extra statement fields do not match the built-in statements: "
                f"{', '.join(sorted(_BUILTIN_FIELDS))} vs. {', '.join(sorted(keys))}"
            )
        try:
            statements.append(Statement.from_mapping(item))
        except ValueError as exc:
            warnings.append(f"skipped extra statement: {exc}")
    return statements, warnings


def generate_resource_map(
    metadata_pid: str,
    data_pids: Optional[Iterable[str]] = None,
    child_pids: Optional[Iterable[str]] = None,
    extra_statements: Optional[Iterable[StatementLike]] = None,
    resolve_base: str = DEFAULT_RESOLVE_BASE,
    resource_map_pid: Optional[str] = None,
) -> ResourceMap:
    """Build the deterministic statement set for one package.

    Args:
        metadata_pid: Identifier of the package's metadata object.
        data_pids: Identifiers of the data objects; duplicates are ignored.
        child_pids: Resource-map identifiers of nested packages.
        extra_statements: Additional statements merged in verbatim, either
            :class:`Statement` instances or mappings with ``subject``,
            ``predicate``, ``object`` and optional ``subjectType``,
            ``objectType`` and ``dataTypeURI`` keys.
        resolve_base: Base URI used to turn identifiers into URIs.
        resource_map_pid: Explicit identifier for the map; derived from
            *metadata_pid* when omitted.

    Returns:
        The :class:`ResourceMap` holding the deduplicated statements and the
        aggregated identifiers (metadata, data, then children).
    """

    if not isinstance(metadata_pid, str) or not metadata_pid:
        raise PreconditionError("metadata_pid must be a non-empty string")
    if resource_map_pid is None:
        resource_map_pid = generate_resource_map_pid(metadata_pid)
    if not isinstance(resource_map_pid, str) or not resource_map_pid:
        raise PreconditionError("resource_map_pid must be a non-empty string")

    data = [pid for pid in _unique(data_pids) if pid != metadata_pid]
    children = _unique(child_pids)

    metadata_uri = resolve_uri(resolve_base, metadata_pid)
    aggregation_uri = f"{resolve_uri(resolve_base, resource_map_pid)}#aggregation"

    statements: List[Statement] = list(_documents_pair(metadata_uri, metadata_uri))
    for pid in data:
        statements.extend(_documents_pair(metadata_uri, resolve_uri(resolve_base, pid)))
    for pid in children:
        child_uri = resolve_uri(resolve_base, pid)
        statements.append(Statement(aggregation_uri, ORE_AGGREGATES, child_uri))
        statements.append(Statement(child_uri, ORE_IS_AGGREGATED_BY, aggregation_uri))
        statements.extend(_documents_pair(metadata_uri, child_uri))

    extras, warnings = _coerce_extra_statements(extra_statements)
    for message in warnings:
        logger.warning(message, extra={"stage": "resource_map", "pid": resource_map_pid})
    if extras:
        logger.info(
            "adding %d custom statement(s) to the resource map",
            len(extras),
            extra={"stage": "resource_map", "pid": resource_map_pid},
        )
    statements.extend(extras)

    unique_statements = tuple(sorted(set(statements), key=Statement.sort_key))
    aggregated = tuple(_unique([metadata_pid, *data, *children]))
    return ResourceMap(
        identifier=resource_map_pid,
        metadata_identifier=metadata_pid,
        statements=unique_statements,
        aggregated_identifiers=aggregated,
        resolve_base=resolve_base.rstrip("/"),
        warnings=tuple(warnings),
    )


def _is_packaging_statement(statement: Statement) -> bool:
    if statement.predicate in PACKAGING_PREDICATES:
        return True
    if statement.predicate == RDF_TYPE and statement.object in _PACKAGING_TYPES:
        return True
    if statement.predicate == DCTERMS_CREATOR and statement.object_type == "blank":
        return True
    return statement.subject in CLIENT_AGENT_NAMES or statement.object in CLIENT_AGENT_NAMES


def filter_packaging_statements(
    statements: Optional[Iterable[StatementLike]],
) -> Tuple[Statement, ...]:
    """Drop the statements this module generates, keeping everything else.

    Removes documentation (``cito``), containment (``ore``) and
    ``dcterms:identifier`` statements, the ORE type declarations, and the
    client agent naming statements. Items that cannot be read as statements
    are dropped as well, so the function accepts any iterable and never
    raises. Applying it twice gives the same result as applying it once.
    """

    if statements is None:
        return ()
    try:
        items = list(statements)
    except TypeError:
        return ()

    kept: List[Statement] = []
    for item in items:
        if isinstance(item, Statement):
            statement = item
        elif isinstance(item, Mapping):
            try:
                statement = Statement.from_mapping(item)
            except (ValueError, TypeError):
                continue
        else:
            continue
        try:
            packaging = _is_packaging_statement(statement)
        except TypeError:
            # Unhashable terms.
            continue
        if not packaging:
            kept.append(statement)
    return tuple(kept)


# ============================================================================
# RDF Serialization (RDF)
# ============================================================================


def _term(value: str, kind: str, data_type: Optional[str] = None) -> Any:
    normalized = (kind or "uri").lower()
    if normalized == "uri":
        return URIRef(value)
    if normalized in {"blank", "bnode"}:
        return BNode(value)
    if normalized == "literal":
        return Literal(value, datatype=URIRef(data_type) if data_type else None)
    raise ValueError(f"unknown term type '{kind}' for value {value!r}")


def _kind(term: Any) -> str:
    if isinstance(term, BNode):
        return "blank"
    if isinstance(term, Literal):
        return "literal"
    return "uri"


def build_graph(resource_map: ResourceMap) -> Graph:
    """Return the OAI-ORE rdflib graph for *resource_map*."""

    graph = Graph()
    graph.bind("ore", ORE)
    graph.bind("cito", CITO)
    graph.bind("dcterms", DCTERMS)
    graph.bind("foaf", FOAF)

    rem = URIRef(resource_map.uri)
    aggregation = URIRef(resource_map.aggregation_uri)
    graph.add((rem, RDF.type, ORE.ResourceMap))
    graph.add((rem, ORE.describes, aggregation))
    graph.add((rem, DCTERMS.identifier, Literal(resource_map.identifier, datatype=XSD.string)))
    agent = BNode()
    graph.add((rem, DCTERMS.creator, agent))
    graph.add((agent, RDF.type, DCTERMS.Agent))
    graph.add((agent, FOAF.name, Literal(CLIENT_AGENT_NAME, datatype=XSD.string)))

    graph.add((aggregation, RDF.type, ORE.Aggregation))
    graph.add((aggregation, ORE.isDescribedBy, rem))
    for pid in resource_map.aggregated_identifiers:
        node = URIRef(resolve_uri(resource_map.resolve_base, pid))
        graph.add((aggregation, ORE.aggregates, node))
        graph.add((node, ORE.isAggregatedBy, aggregation))
        graph.add((node, DCTERMS.identifier, Literal(pid, datatype=XSD.string)))

    for statement in resource_map.statements:
        graph.add(
            (
                _term(statement.subject, statement.subject_type),
                URIRef(statement.predicate),
                _term(statement.object, statement.object_type, statement.data_type_uri),
            )
        )
    return graph


def serialize_resource_map(resource_map: ResourceMap, fmt: str = "xml") -> bytes:
    """Serialize *resource_map* (RDF/XML by default)."""

    return build_graph(resource_map).serialize(format=fmt, encoding="utf-8")


def parse_resource_map(path: Path, fmt: str = "xml") -> Tuple[Statement, ...]:
    """Read a serialized resource map back into statements."""

    resolved = Path(path)
    if not resolved.is_file():
        raise FileNotFoundError(f"Resource map not found: {resolved}")
    graph = Graph()
    graph.parse(str(resolved), format=fmt)
    statements = set()
    for subject, predicate, obj in graph:
        data_type = getattr(obj, "datatype", None)
        statements.add(
            Statement(
                subject=str(subject),
                predicate=str(predicate),
                object=str(obj),
                subject_type=_kind(subject),
                object_type=_kind(obj),
                data_type_uri=str(data_type) if data_type else None,
            )
        )
    return tuple(sorted(statements, key=Statement.sort_key))


def statements_from_rows(rows: Sequence[Mapping[str, Any]]) -> Tuple[Statement, ...]:
    """Convert tabular statement rows into statements, skipping unreadable rows."""

    statements, warnings = _coerce_extra_statements(rows)
    for message in warnings:
        logger.warning(message, extra={"stage": "resource_map"})
    return tuple(statements)
