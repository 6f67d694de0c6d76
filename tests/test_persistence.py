"""Tests for persistence layer (DuckDB call store and provenance tracking)."""

import json

import duckdb
import pytest

from bgee_pipeline.calls.models import (
    DataState,
    DataType,
    ExpressionCall,
    ExpressionOrigin,
    NoExpressionCall,
    NoExpressionOrigin,
)
from bgee_pipeline.config.loader import load_config
from bgee_pipeline.errors import CallValidationError
from bgee_pipeline.persistence import CallStore, ProvenanceTracker

HIGH = DataState.HIGHQUALITY
LOW = DataState.LOWQUALITY
NODATA = DataState.NODATA


@pytest.fixture
def test_config(tmp_path):
    """Create a minimal test config."""
    config_path = tmp_path / "test_config.yaml"
    config_path.write_text("""
duckdb_path: {duckdb_path}
output_dir: {output_dir}
species_ids: ["9606"]
""".format(
        duckdb_path=str(tmp_path / "test.duckdb"),
        output_dir=str(tmp_path / "out"),
    ))
    return load_config(config_path)


@pytest.fixture
def store(tmp_path):
    """Store with two species, a small anatomy and a few basic calls."""
    store = CallStore(tmp_path / "test.duckdb")
    conn = store.conn

    conn.execute("INSERT INTO species VALUES ('9606', 'human'), ('10090', 'mouse')")
    conn.execute("""
        INSERT INTO gene VALUES
            ('G1', 'GENE1', '9606'),
            ('G2', NULL, '9606'),
            ('M1', 'Mgene1', '10090')
    """)
    conn.execute("""
        INSERT INTO anat_entity VALUES
            ('body', 'whole body', FALSE),
            ('head', 'head', FALSE),
            ('brain', 'brain', FALSE),
            ('unknown', 'unknown', TRUE)
    """)
    conn.execute("INSERT INTO stage VALUES ('S1', 'adult'), ('S2', 'young adult')")
    conn.execute("""
        INSERT INTO anat_entity_relation VALUES
            ('9606', 'brain', 'head'),
            ('9606', 'head', 'body'),
            ('9606', 'unknown', 'unknown'),
            ('10090', 'head', 'body')
    """)
    conn.execute("""
        INSERT INTO stage_relation VALUES
            ('9606', 'S2', 'S1'),
            ('10090', 'S1', 'S1')
    """)
    conn.execute("""
        INSERT INTO expression_call
            (expression_id, gene_id, anat_entity_id, stage_id, affymetrix_data, est_data)
        VALUES
            (1, 'G1', 'brain', 'S1', 'high quality', 'poor quality'),
            (2, 'G2', 'head', 'S2', 'no data', 'high quality'),
            (7, 'M1', 'head', 'S1', 'poor quality', 'no data')
    """)
    conn.execute("""
        INSERT INTO no_expression_call
            (no_expression_id, gene_id, anat_entity_id, stage_id, affymetrix_data, relaxed_in_situ_data)
        VALUES
            (3, 'G1', 'head', 'S1', 'high quality', 'poor quality'),
            (4, 'G2', 'body', 'S1', 'poor quality', 'no data')
    """)
    conn.execute("""
        INSERT INTO affymetrix_probeset (affymetrix_probeset_id, no_expression_id) VALUES
            ('P1', 3), ('P2', 3), ('P3', 4)
    """)

    yield store
    store.close()


# ============================================================================
# CallStore Tests
# ============================================================================

def test_store_creates_database(tmp_path):
    """Test that CallStore creates .duckdb file and its tables."""
    db_path = tmp_path / "sub" / "test.duckdb"
    assert not db_path.exists()

    store = CallStore(db_path)
    tables = {row[0] for row in store.conn.execute("SHOW TABLES").fetchall()}
    store.close()

    assert db_path.exists()
    assert {"expression_call", "no_expression_call", "anat_entity_relation",
            "global_expression_to_expression", "rna_seq_result"} <= tables


def test_schema_creation_is_idempotent(store):
    """Re-opening an existing database keeps its data."""
    db_path = store.db_path
    store.close()

    reopened = CallStore(db_path)
    assert reopened.load_species_ids() == ["10090", "9606"]
    reopened.close()


def test_check_species_ids(store):
    assert store.check_species_ids(None) == ["10090", "9606"]
    assert store.check_species_ids([]) == ["10090", "9606"]
    assert store.check_species_ids(["9606", "9606"]) == ["9606"]

    with pytest.raises(CallValidationError, match="7955"):
        store.check_species_ids(["9606", "7955"])


def test_load_relation_index(store):
    """Closures are reflexive and restricted to the species relations."""
    relations = store.load_relation_index("9606")

    assert relations.anat_entities.ancestors_of_child["brain"] == {"brain", "head", "body"}
    assert relations.anat_entities.children_of_ancestor["body"] == {"body", "head", "brain"}
    assert relations.anat_entities.children_of_ancestor["unknown"] == {"unknown"}
    assert relations.stages.children_of_ancestor["S1"] == {"S1", "S2"}

    mouse = store.load_relation_index("10090")
    assert "brain" not in mouse.anat_entities.ancestors_of_child
    # "unknown" only has a human reflexive row
    assert "unknown" not in mouse.anat_entities.ancestors_of_child
    assert mouse.stages.ancestors_of_child["S1"] == {"S1"}

    both = store.load_relation_index(["9606", "10090"])
    assert both.anat_entities.ancestors_of_child["head"] == {"head", "body"}


def test_load_basic_calls(store):
    """Calls are loaded per species with their data states."""
    expr_calls = store.load_basic_expression_calls("9606")
    assert [call.id for call in expr_calls] == [1, 2]
    assert expr_calls[0] == ExpressionCall(
        id=1, gene_id="G1", anat_entity_id="brain", stage_id="S1",
        affymetrix_data=HIGH, est_data=LOW,
    )

    no_expr_calls = store.load_basic_no_expression_calls("9606")
    assert [call.id for call in no_expr_calls] == [3, 4]
    assert no_expr_calls[0].relaxed_in_situ_data == LOW
    assert no_expr_calls[0].origin == NoExpressionOrigin.SELF

    assert [call.id for call in store.load_basic_expression_calls("10090")] == [7]
    assert store.load_basic_no_expression_calls("10090") == []
    assert store.load_global_expression_calls("9606") == []


def test_insert_and_load_global_calls(store):
    """Global calls round trip through the store."""
    global_calls = [
        ExpressionCall(id=10, gene_id="G1", anat_entity_id="head", stage_id="S1",
                       affymetrix_data=HIGH, is_global=True, origin=ExpressionOrigin.DESCENT),
        ExpressionCall(id=11, gene_id="G1", anat_entity_id="brain", stage_id="S1",
                       affymetrix_data=HIGH, est_data=LOW, is_global=True),
    ]

    assert store.insert_global_calls(global_calls) == 2
    assert store.insert_global_calls([]) == 0

    loaded = store.load_global_expression_calls("9606")
    assert sorted(loaded, key=lambda call: call.id) == global_calls
    assert [call.id for call in store.load_basic_expression_calls("9606")] == [1, 2]


def test_insert_join_rows(store):
    assert store.insert_join_rows({(10, 1), (11, 1)}) == 2
    assert store.insert_join_rows({(20, 3)}, no_expression=True) == 1

    expr_rows = store.conn.execute(
        "SELECT * FROM global_expression_to_expression ORDER BY global_expression_id"
    ).pl()
    assert expr_rows.rows() == [(10, 1), (11, 1)]
    no_expr_rows = store.conn.execute("SELECT * FROM global_no_expression_to_no_expression").pl()
    assert no_expr_rows.rows() == [(20, 3)]


def test_get_max_call_id(store, tmp_path):
    assert store.get_max_call_id() == 7
    assert store.get_max_call_id(no_expression=True) == 4

    empty = CallStore(tmp_path / "empty.duckdb")
    assert empty.get_max_call_id() == 0
    empty.close()


def test_update_no_expression_calls(store):
    updated = NoExpressionCall(
        id=3, gene_id="G1", anat_entity_id="head", stage_id="S1",
        affymetrix_data=NODATA, relaxed_in_situ_data=LOW,
    )

    assert store.update_no_expression_calls([updated]) == 1

    calls = {call.id: call for call in store.load_basic_no_expression_calls("9606")}
    assert calls[3].affymetrix_data == NODATA
    assert calls[3].relaxed_in_situ_data == LOW
    assert calls[4].affymetrix_data == LOW


def test_delete_no_expression_calls(store):
    assert store.delete_no_expression_calls({4, 999}) == 1
    assert store.delete_no_expression_calls(set()) == 0
    assert [call.id for call in store.load_basic_no_expression_calls("9606")] == [3]


def test_update_raw_data_exclusion(store):
    """Raw data rows of conflicting calls lose their reference and are flagged."""
    assert store.update_raw_data_exclusion(DataType.AFFYMETRIX, {3}) == 2

    rows = store.conn.execute(
        "SELECT affymetrix_probeset_id, no_expression_id, reason_for_exclusion "
        "FROM affymetrix_probeset ORDER BY affymetrix_probeset_id"
    ).pl()
    assert rows.rows() == [
        ("P1", None, "noExpression conflict"),
        ("P2", None, "noExpression conflict"),
        ("P3", 4, "not excluded"),
    ]

    with pytest.raises(ValueError, match="No raw data table"):
        store.update_raw_data_exclusion(DataType.RELAXED_IN_SITU, {3})


def test_load_call_anat_entity_ids(store):
    assert store.load_call_anat_entity_ids(["9606"]) == {"brain", "head", "body"}
    assert store.load_call_anat_entity_ids(["10090"]) == {"head"}


def test_load_names_and_non_informative(store):
    names = store.load_names("9606")
    assert names["gene"] == {"G1": "GENE1", "G2": ""}
    assert names["anat_entity"]["body"] == "whole body"
    assert names["stage"]["S2"] == "young adult"

    assert store.load_non_informative_anat_entities() == {"unknown"}


def test_transaction_commits(store):
    with store.transaction():
        store.delete_no_expression_calls({3})

    assert [call.id for call in store.load_basic_no_expression_calls("9606")] == [4]


def test_transaction_rolls_back_on_error(store):
    """All writes of a failed transaction are discarded and the error propagates."""
    with pytest.raises(RuntimeError, match="boom"):
        with store.transaction():
            store.delete_no_expression_calls({3, 4})
            store.update_raw_data_exclusion(DataType.AFFYMETRIX, {3})
            raise RuntimeError("boom")

    assert [call.id for call in store.load_basic_no_expression_calls("9606")] == [3, 4]
    rows = store.conn.execute("SELECT COUNT(*) AS n FROM affymetrix_probeset WHERE no_expression_id = 3").pl()
    assert rows["n"][0] == 2


def test_duplicate_call_id_rejected(store):
    """The store enforces unique call IDs."""
    with pytest.raises(duckdb.ConstraintException):
        store.insert_global_calls([
            ExpressionCall(id=1, gene_id="G1", anat_entity_id="head", stage_id="S1",
                           affymetrix_data=HIGH, is_global=True, origin=ExpressionOrigin.DESCENT),
        ])


def test_context_manager(tmp_path):
    """Test CallStore as context manager."""
    with CallStore(tmp_path / "test.duckdb") as store:
        store.conn.execute("INSERT INTO species VALUES ('9606', 'human')")
        assert store.load_species_ids() == ["9606"]

    assert store.conn is None


def test_from_config(test_config):
    store = CallStore.from_config(test_config)
    assert store.db_path == test_config.duckdb_path
    store.close()


# ============================================================================
# Provenance Tests
# ============================================================================

def test_provenance_metadata_structure(test_config):
    provenance = ProvenanceTracker("0.1.0", test_config)
    metadata = provenance.create_metadata()

    assert metadata["pipeline_version"] == "0.1.0"
    assert metadata["config_hash"] == test_config.config_hash()
    assert metadata["requested_species_ids"] == ["9606"]
    assert metadata["processed_species_ids"] == []
    assert metadata["species_counts"] == {}
    assert metadata["processing_steps"] == []


def test_provenance_records_steps(test_config):
    provenance = ProvenanceTracker.from_config(test_config)
    provenance.record_step("insert_global_calls", {"species_id": "9606", "global_calls": 3})
    provenance.record_step("generate_expression_file")

    steps = provenance.get_steps()
    assert [step["step_name"] for step in steps] == ["insert_global_calls", "generate_expression_file"]
    assert steps[0]["details"]["global_calls"] == 3
    assert "details" not in steps[1]


def test_provenance_records_species_counts(test_config):
    """Per-species counts are kept by step, and merged when a step repeats."""
    provenance = ProvenanceTracker.from_config(test_config)
    provenance.record_species_step("insert_global_expression_calls", "10090", {"global_calls": 3})
    provenance.record_species_step("generate_expression_files", "9606", {"expr-simple_rows": 10})
    provenance.record_species_step("generate_expression_files", "9606", {"expr-complete_rows": 13})

    assert provenance.processed_species_ids == ["10090", "9606"]
    assert provenance.species_counts["9606"] == {
        "generate_expression_files": {"expr-simple_rows": 10, "expr-complete_rows": 13},
    }
    steps = provenance.get_steps()
    assert len(steps) == 3
    assert steps[0]["details"] == {"species_id": "10090", "global_calls": 3}


def test_provenance_save_to_store(test_config):
    store = CallStore.from_config(test_config)
    provenance = ProvenanceTracker.from_config(test_config)
    provenance.record_species_step("filter_no_expression_calls", "9606", {"deleted": 2})

    provenance.save_to_store(store)

    row = store.conn.execute(
        "SELECT version, config_hash, species_ids, species_counts_json, steps_json FROM _provenance"
    ).fetchone()
    assert row[1] == test_config.config_hash()
    assert row[2] == ["9606"]
    assert json.loads(row[3]) == {"9606": {"filter_no_expression_calls": {"deleted": 2}}}
    assert json.loads(row[4])[0]["details"] == {"species_id": "9606", "deleted": 2}
    store.close()
