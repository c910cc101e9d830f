"""Resource map statement generation, filtering and RDF round trips."""

from __future__ import annotations

from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from ArchiveSync.PackageUpload.errors import PreconditionError
from ArchiveSync.PackageUpload.resource_map import (
    CITO_DOCUMENTS,
    CITO_IS_DOCUMENTED_BY,
    CLIENT_AGENT_NAME,
    DCTERMS_IDENTIFIER,
    FOAF_NAME,
    ORE_AGGREGATES,
    ORE_IS_AGGREGATED_BY,
    Statement,
    filter_packaging_statements,
    generate_resource_map,
    parse_resource_map,
    resolve_uri,
    statements_from_rows,
)
from ArchiveSync.PackageUpload.settings import DEFAULT_RESOLVE_BASE

PROV_DERIVED = "http://www.w3.org/ns/prov#wasDerivedFrom"
RDFS_LABEL = "http://www.w3.org/2000/01/rdf-schema#label"

identifiers = st.text(alphabet="abcdefXYZ0189:/._-", min_size=1, max_size=12)


def _uri(pid: str) -> str:
    return resolve_uri(DEFAULT_RESOLVE_BASE, pid)


def test_single_data_object_yields_four_statements() -> None:
    resource_map = generate_resource_map("m1", ["d1"])

    m1, d1 = _uri("m1"), _uri("d1")
    assert resource_map.statement_set == {
        Statement(m1, CITO_DOCUMENTS, m1),
        Statement(m1, CITO_IS_DOCUMENTED_BY, m1),
        Statement(m1, CITO_DOCUMENTS, d1),
        Statement(d1, CITO_IS_DOCUMENTED_BY, m1),
    }
    assert len(resource_map.statements) == 4
    assert resource_map.identifier == "resource_map_m1"
    assert resource_map.aggregated_identifiers == ("m1", "d1")


def test_metadata_only_package_documents_itself() -> None:
    resource_map = generate_resource_map("m1")

    assert {statement.predicate for statement in resource_map.statements} == {
        CITO_DOCUMENTS,
        CITO_IS_DOCUMENTED_BY,
    }
    assert len(resource_map.statements) == 2


def test_identifiers_are_percent_encoded() -> None:
    resource_map = generate_resource_map("doi:10.5065/ABC", ["urn:uuid:1"])

    subjects = {statement.subject for statement in resource_map.statements}
    assert f"{DEFAULT_RESOLVE_BASE}/doi%3A10.5065%2FABC" in subjects
    assert f"{DEFAULT_RESOLVE_BASE}/urn%3Auuid%3A1" in subjects


def test_child_packages_are_aggregated_and_documented() -> None:
    resource_map = generate_resource_map("m1", ["d1"], child_pids=["resource_map_c1"])

    aggregation = f"{_uri('resource_map_m1')}#aggregation"
    child = _uri("resource_map_c1")
    assert Statement(aggregation, ORE_AGGREGATES, child) in resource_map.statement_set
    assert Statement(child, ORE_IS_AGGREGATED_BY, aggregation) in resource_map.statement_set
    assert Statement(_uri("m1"), CITO_DOCUMENTS, child) in resource_map.statement_set
    assert Statement(child, CITO_IS_DOCUMENTED_BY, _uri("m1")) in resource_map.statement_set
    assert resource_map.aggregated_identifiers == ("m1", "d1", "resource_map_c1")


def test_empty_metadata_identifier_is_rejected() -> None:
    with pytest.raises(PreconditionError):
        generate_resource_map("", ["d1"])


def test_extra_statements_merge_with_defaults_and_warnings() -> None:
    extras = [
        {"subject": _uri("d1"), "predicate": PROV_DERIVED, "object": _uri("d0")},
        {"subject": _uri("d1"), "predicate": RDFS_LABEL, "object": "Readings", "objectType": "literal", "graph": "g"},
        {"subject": _uri("d1"), "predicate": RDFS_LABEL},
        Statement(_uri("m1"), CITO_DOCUMENTS, _uri("d1")),
    ]

    resource_map = generate_resource_map("m1", ["d1"], extra_statements=extras)

    assert Statement(_uri("d1"), PROV_DERIVED, _uri("d0")) in resource_map.statement_set
    assert (
        Statement(_uri("d1"), RDFS_LABEL, "Readings", object_type="literal")
        in resource_map.statement_set
    )
    assert len(resource_map.statements) == 6
    assert any("graph" in warning for warning in resource_map.warnings)
    assert any(warning.startswith("skipped extra statement") for warning in resource_map.warnings)


@given(st.lists(identifiers, max_size=6), st.randoms())
def test_statement_set_ignores_input_order(data_pids, random) -> None:
    shuffled = list(data_pids)
    random.shuffle(shuffled)

    first = generate_resource_map("meta", data_pids)
    second = generate_resource_map("meta", shuffled)

    assert first.statements == second.statements


@given(st.lists(identifiers, max_size=6), st.randoms())
def test_statement_set_ignores_child_order(child_pids, random) -> None:
    shuffled = list(child_pids)
    random.shuffle(shuffled)

    first = generate_resource_map("meta", ["data"], child_pids=child_pids)
    second = generate_resource_map("meta", ["data"], child_pids=shuffled)

    assert first.statement_set == second.statement_set


@given(st.lists(identifiers, max_size=5), st.lists(identifiers, max_size=5), st.randoms())
def test_statement_set_ignores_data_and_child_order(data_pids, child_pids, random) -> None:
    shuffled_data = list(data_pids)
    shuffled_children = list(child_pids)
    random.shuffle(shuffled_data)
    random.shuffle(shuffled_children)

    first = generate_resource_map("meta", data_pids, child_pids=child_pids)
    second = generate_resource_map("meta", shuffled_data, child_pids=shuffled_children)

    assert first.statement_set == second.statement_set
    assert set(first.aggregated_identifiers) == set(second.aggregated_identifiers)


@given(st.lists(identifiers, max_size=6))
def test_duplicate_data_identifiers_collapse(data_pids) -> None:
    doubled = generate_resource_map("meta", data_pids + data_pids + ["meta"])
    unique = [pid for pid in dict.fromkeys(data_pids) if pid != "meta"]

    assert doubled.statements == generate_resource_map("meta", unique).statements
    assert len(doubled.statements) == 2 + 2 * len(unique)


predicates = st.sampled_from(
    [CITO_DOCUMENTS, CITO_IS_DOCUMENTED_BY, ORE_AGGREGATES, DCTERMS_IDENTIFIER, FOAF_NAME, PROV_DERIVED, RDFS_LABEL]
)
terms = st.one_of(identifiers, st.just(CLIENT_AGENT_NAME), st.just("DataONE R Client"))
statement_strategy = st.builds(Statement, subject=terms, predicate=predicates, object=terms)
loose_items = st.one_of(
    statement_strategy,
    st.builds(lambda s: s.to_mapping(), statement_strategy),
    st.dictionaries(st.sampled_from(["subject", "predicate", "noise"]), identifiers, max_size=3),
    st.integers(),
    st.none(),
)


@given(st.lists(loose_items, max_size=10))
def test_filter_is_total_and_idempotent(items) -> None:
    once = filter_packaging_statements(items)

    assert filter_packaging_statements(once) == once
    for statement in once:
        assert statement.predicate not in {CITO_DOCUMENTS, CITO_IS_DOCUMENTED_BY, ORE_AGGREGATES, DCTERMS_IDENTIFIER}
        assert CLIENT_AGENT_NAME not in {statement.subject, statement.object}


def test_filter_accepts_non_iterables() -> None:
    assert filter_packaging_statements(None) == ()
    assert filter_packaging_statements(42) == ()  # type: ignore[arg-type]


def test_filter_drops_statements_with_unhashable_terms() -> None:
    kept = Statement(_uri("d1"), PROV_DERIVED, _uri("d0"))
    broken = Statement(subject=["x"], predicate=["p"], object="o")  # type: ignore[arg-type]

    assert filter_packaging_statements([broken, kept]) == (kept,)


def test_serialized_map_round_trips_through_filter(tmp_path: Path) -> None:
    provenance = Statement(_uri("d1"), PROV_DERIVED, _uri("d0"))
    label = Statement(_uri("d1"), RDFS_LABEL, "Readings", object_type="literal")
    resource_map = generate_resource_map("m1", ["d1"], extra_statements=[provenance, label])
    path = tmp_path / "resource_map_m1.xml"
    path.write_bytes(resource_map.serialize())

    parsed = parse_resource_map(path)

    assert set(resource_map.statements) <= set(parsed)
    assert set(filter_packaging_statements(parsed)) == {provenance, label}


def test_turtle_serialization(tmp_path: Path) -> None:
    resource_map = generate_resource_map("m1", ["d1"])
    path = tmp_path / "map.ttl"
    path.write_bytes(resource_map.serialize("turtle"))

    parsed = parse_resource_map(path, fmt="turtle")

    assert set(resource_map.statements) <= set(parsed)


def test_parse_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        parse_resource_map(tmp_path / "absent.xml")


def test_statements_from_rows_skips_unreadable_rows() -> None:
    rows = [
        {"subject": "s", "predicate": "p", "object": "o", "subject_type": "uri", "object_type": "literal"},
        {"subject": "s"},
    ]

    assert statements_from_rows(rows) == (Statement("s", "p", "o", object_type="literal"),)
