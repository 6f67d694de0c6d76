"""Integration tests for CLI commands using CliRunner.

Tests:
- info with config summary
- filter-conflicts, propagate, propagate --no-expression, download-files chain
- --species and --file-type overrides
- Error handling (unknown species, unsupported file type)
"""

import json

import duckdb
import polars as pl
import pytest
from click.testing import CliRunner

from bgee_pipeline.cli.main import cli
from bgee_pipeline.persistence import CallStore


@pytest.fixture
def populated_db(tmp_path):
    """Create DuckDB with one human gene expressed in brain and absent in head."""
    db_path = tmp_path / "bgee.duckdb"
    CallStore(db_path).close()

    conn = duckdb.connect(str(db_path))
    conn.execute("INSERT INTO species VALUES ('9606', 'human')")
    conn.execute("INSERT INTO gene VALUES ('G1', 'GENE1', '9606')")
    conn.execute("""
        INSERT INTO anat_entity VALUES
            ('head', 'head', FALSE), ('brain', 'brain', FALSE), ('eye', 'eye', FALSE)
    """)
    conn.execute("INSERT INTO stage VALUES ('S1', 'adult')")
    conn.execute("""
        INSERT INTO anat_entity_relation VALUES
            ('9606', 'brain', 'head'), ('9606', 'eye', 'head')
    """)
    conn.execute("INSERT INTO stage_relation VALUES ('9606', 'S1', 'S1')")
    conn.execute("""
        INSERT INTO expression_call (expression_id, gene_id, anat_entity_id, stage_id, affymetrix_data)
        VALUES (1, 'G1', 'brain', 'S1', 'high quality')
    """)
    conn.execute("""
        INSERT INTO no_expression_call (no_expression_id, gene_id, anat_entity_id, stage_id, affymetrix_data, in_situ_data)
        VALUES (1, 'G1', 'head', 'S1', 'high quality', 'high quality')
    """)
    conn.close()
    return db_path


@pytest.fixture
def test_config(tmp_path, populated_db):
    """Create minimal config YAML for testing."""
    config_path = tmp_path / "test_config.yaml"
    config_path.write_text(f"""
duckdb_path: {populated_db}
output_dir: {tmp_path}/download_files
species_ids: []
propagation:
  restrict_no_expression_to_allowed: true
download_files:
  file_types: [expr-simple, expr-complete]
  filter_non_informative: true
""")
    return config_path


def test_info(test_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['--config', str(test_config), 'info'])

    assert result.exit_code == 0
    assert 'Config Hash:' in result.output
    assert 'all species in store' in result.output
    assert 'expr-simple, expr-complete' in result.output


def test_help_lists_commands(test_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['--config', str(test_config), '--help'])

    assert result.exit_code == 0
    for command in ('filter-conflicts', 'propagate', 'download-files', 'info'):
        assert command in result.output


def test_full_chain(test_config, populated_db, tmp_path):
    """Filtering, both propagations and file generation run in order."""
    runner = CliRunner()

    result = runner.invoke(cli, ['--config', str(test_config), 'filter-conflicts'])
    assert result.exit_code == 0, result.output
    assert 'Species 9606: 1 examined, 0 deleted, 1 updated' in result.output

    result = runner.invoke(cli, ['--config', str(test_config), 'propagate'])
    assert result.exit_code == 0, result.output
    assert '2 global calls' in result.output

    result = runner.invoke(cli, ['--config', str(test_config), 'propagate', '--no-expression'])
    assert result.exit_code == 0, result.output
    assert '2 global calls' in result.output

    result = runner.invoke(cli, ['--config', str(test_config), 'download-files', '--species', '9606'])
    assert result.exit_code == 0, result.output

    output_dir = tmp_path / "download_files"
    simple = pl.read_csv(output_dir / "9606_expr-simple.tsv", separator="\t")
    complete = pl.read_csv(output_dir / "9606_expr-complete.tsv", separator="\t")
    # eye has no call, so no-expression is not propagated to it
    assert simple.height == 2
    assert complete.height == 2

    simple_resumes = dict(zip(simple["Anatomical entity ID"].to_list(), simple["Expression/No-expression"].to_list()))
    assert simple_resumes == {"brain": "low ambiguity", "head": "absent high quality"}
    assert complete["Expression/No-expression"].to_list() == ["high ambiguity", "high ambiguity"]

    conn = duckdb.connect(str(populated_db), read_only=True)
    runs = conn.execute("SELECT species_ids, species_counts_json FROM _provenance ORDER BY created_at").fetchall()
    conn.close()
    assert len(runs) == 3
    # an empty species list in the config resolves to the species in the store
    assert all(species_ids == ["9606"] for species_ids, _ in runs)
    assert json.loads(runs[0][1])["9606"]["filter_no_expression_calls"]["updated"] == 1


def test_download_single_file_type(test_config, tmp_path):
    runner = CliRunner()
    runner.invoke(cli, ['--config', str(test_config), 'filter-conflicts'])
    runner.invoke(cli, ['--config', str(test_config), 'propagate', '--no-expression'])

    result = runner.invoke(cli, ['--config', str(test_config), 'download-files', '--file-type', 'expr-simple'])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "download_files" / "9606_expr-simple.tsv").exists()
    assert not (tmp_path / "download_files" / "9606_expr-complete.tsv").exists()


def test_unknown_species_fails(test_config):
    runner = CliRunner()
    result = runner.invoke(cli, ['--config', str(test_config), 'propagate', '--species', '7955'])

    assert result.exit_code == 1
    assert '7955' in result.output


def test_diffexpr_file_type_fails(test_config, tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['--config', str(test_config), 'download-files', '--file-type', 'diffexpr-simple'])

    assert result.exit_code == 1
    assert 'not supported' in result.output
    assert not list((tmp_path / "download_files").glob("*.tsv"))
