"""DuckDB-based storage for calls, ontologies and raw data references."""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import duckdb
import polars as pl
import structlog

from bgee_pipeline.calls.models import (
    EXPRESSION_DATA_TYPES,
    NO_EXPRESSION_DATA_TYPES,
    DataState,
    DataType,
    ExpressionCall,
    ExpressionOrigin,
    NoExpressionCall,
    NoExpressionOrigin,
)
from bgee_pipeline.errors import CallValidationError
from bgee_pipeline.ontology.relations import RelationIndex, SpeciesRelations

logger = structlog.get_logger(__name__)

NO_EXPRESSION_CONFLICT = "noExpression conflict"

# Relation tables hold child (source) -> parent (target) edges per species.
# A term with calls but no relation at all needs a reflexive row
# (term, term), otherwise it is unknown to the species closures.
_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS species (
        species_id VARCHAR PRIMARY KEY,
        species_name VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gene (
        gene_id VARCHAR PRIMARY KEY,
        gene_name VARCHAR,
        species_id VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS anat_entity (
        anat_entity_id VARCHAR PRIMARY KEY,
        anat_entity_name VARCHAR,
        non_informative BOOLEAN DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stage (
        stage_id VARCHAR PRIMARY KEY,
        stage_name VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS anat_entity_relation (
        species_id VARCHAR NOT NULL,
        source_id VARCHAR NOT NULL,
        target_id VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stage_relation (
        species_id VARCHAR NOT NULL,
        source_id VARCHAR NOT NULL,
        target_id VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expression_call (
        expression_id BIGINT PRIMARY KEY,
        gene_id VARCHAR NOT NULL,
        anat_entity_id VARCHAR NOT NULL,
        stage_id VARCHAR NOT NULL,
        affymetrix_data VARCHAR DEFAULT 'no data',
        est_data VARCHAR DEFAULT 'no data',
        in_situ_data VARCHAR DEFAULT 'no data',
        rna_seq_data VARCHAR DEFAULT 'no data',
        is_global BOOLEAN DEFAULT FALSE,
        origin VARCHAR DEFAULT 'self'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS no_expression_call (
        no_expression_id BIGINT PRIMARY KEY,
        gene_id VARCHAR NOT NULL,
        anat_entity_id VARCHAR NOT NULL,
        stage_id VARCHAR NOT NULL,
        affymetrix_data VARCHAR DEFAULT 'no data',
        in_situ_data VARCHAR DEFAULT 'no data',
        relaxed_in_situ_data VARCHAR DEFAULT 'no data',
        rna_seq_data VARCHAR DEFAULT 'no data',
        is_global BOOLEAN DEFAULT FALSE,
        origin VARCHAR DEFAULT 'self'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_expression_to_expression (
        global_expression_id BIGINT NOT NULL,
        expression_id BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_no_expression_to_no_expression (
        global_no_expression_id BIGINT NOT NULL,
        no_expression_id BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS affymetrix_probeset (
        affymetrix_probeset_id VARCHAR NOT NULL,
        no_expression_id BIGINT,
        reason_for_exclusion VARCHAR DEFAULT 'not excluded'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS in_situ_spot (
        in_situ_spot_id VARCHAR NOT NULL,
        no_expression_id BIGINT,
        reason_for_exclusion VARCHAR DEFAULT 'not excluded'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rna_seq_result (
        rna_seq_result_id VARCHAR NOT NULL,
        no_expression_id BIGINT,
        reason_for_exclusion VARCHAR DEFAULT 'not excluded'
    )
    """,
]

RAW_DATA_TABLES = {
    DataType.AFFYMETRIX: "affymetrix_probeset",
    DataType.IN_SITU: "in_situ_spot",
    DataType.RNA_SEQ: "rna_seq_result",
}

# (call table, ID column, join table, global ID column in join table)
_CALL_TABLES = {
    ExpressionCall: (
        "expression_call",
        "expression_id",
        "global_expression_to_expression",
        "global_expression_id",
    ),
    NoExpressionCall: (
        "no_expression_call",
        "no_expression_id",
        "global_no_expression_to_no_expression",
        "global_no_expression_id",
    ),
}


def _call_frame(calls: Iterable[ExpressionCall | NoExpressionCall], call_class: type) -> pl.DataFrame:
    """Convert calls to a polars DataFrame matching the columns of their table."""
    _, id_column, _, _ = _CALL_TABLES[call_class]
    data_types = EXPRESSION_DATA_TYPES if call_class is ExpressionCall else NO_EXPRESSION_DATA_TYPES

    records = []
    for call in calls:
        record = {
            id_column: call.id,
            "gene_id": call.gene_id,
            "anat_entity_id": call.anat_entity_id,
            "stage_id": call.stage_id,
        }
        for data_type in data_types:
            record[data_type.field_name] = call.data_state(data_type).representation
        record["is_global"] = call.is_global
        record["origin"] = call.origin.value
        records.append(record)

    schema = {
        id_column: pl.Int64,
        "gene_id": pl.Utf8,
        "anat_entity_id": pl.Utf8,
        "stage_id": pl.Utf8,
        **{data_type.field_name: pl.Utf8 for data_type in data_types},
        "is_global": pl.Boolean,
        "origin": pl.Utf8,
    }
    return pl.DataFrame(records, schema=schema)


def _ids_frame(ids: Iterable[int], column: str = "call_id") -> pl.DataFrame:
    return pl.DataFrame({column: sorted(ids)}, schema={column: pl.Int64})


class CallStore:
    """
    DuckDB-backed store of basic and global calls of all species.

    Holds the call tables, the anatomy and stage relations used to build
    RelationIndex closures, the join tables linking global calls to their
    basic sources, and the raw data tables referencing no-expression calls.
    Data states are stored with their string representation.
    """

    def __init__(self, db_path: Path):
        """
        Initialize CallStore with a DuckDB database.

        Args:
            db_path: Path to DuckDB database file. Parent directories
                     are created automatically.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(self.db_path))

        for statement in _SCHEMA:
            self.conn.execute(statement)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["CallStore"]:
        """
        Run the enclosed writes in one transaction.

        Commits on normal exit; rolls back and re-raises on any exception.
        """
        self.conn.execute("BEGIN TRANSACTION")
        try:
            yield self
        except BaseException:
            self.conn.execute("ROLLBACK")
            logger.warning("transaction_rolled_back", db_path=str(self.db_path))
            raise
        else:
            self.conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Species and ontologies
    # ------------------------------------------------------------------

    def load_species_ids(self) -> list[str]:
        rows = self.conn.execute("SELECT species_id FROM species ORDER BY species_id").fetchall()
        return [row[0] for row in rows]

    def check_species_ids(self, species_ids: Iterable[str] | None) -> list[str]:
        """
        Validate requested species against the store.

        Args:
            species_ids: Requested species IDs; None or empty means all species

        Returns:
            Sorted list of species IDs to process

        Raises:
            CallValidationError: If a requested species is not in the store
        """
        known = self.load_species_ids()
        if not species_ids:
            return known

        requested = sorted(set(species_ids))
        unknown = [species_id for species_id in requested if species_id not in known]
        if unknown:
            raise CallValidationError(f"Some species IDs are not found in the data source: {unknown}")
        return requested

    def _load_relations(self, table: str, species_ids: list[str]) -> pl.DataFrame:
        return self.conn.execute(
            f"""
            SELECT DISTINCT source_id, target_id
            FROM {table}
            WHERE list_contains(?, species_id)
            ORDER BY source_id, target_id
            """,
            [species_ids],
        ).pl()

    def load_relation_index(self, species_ids: str | list[str]) -> SpeciesRelations:
        """
        Build anatomy and stage closures for one or more species.

        Only terms appearing in the relation rows of the species are part of
        the closures: a term without parent nor child must be stored with a
        reflexive row, or calls in it raise ConsistencyError downstream.

        Args:
            species_ids: Species ID or list of species IDs

        Returns:
            SpeciesRelations with reflexive anatomical entity and stage indexes
        """
        if isinstance(species_ids, str):
            species_ids = [species_ids]

        anat_edges = self._load_relations("anat_entity_relation", species_ids)
        stage_edges = self._load_relations("stage_relation", species_ids)

        anat_entities = RelationIndex.from_edges(
            "anatomical entity",
            anat_edges.select(["source_id", "target_id"]).iter_rows(),
        )
        stages = RelationIndex.from_edges(
            "stage",
            stage_edges.select(["source_id", "target_id"]).iter_rows(),
        )
        logger.info(
            "relations_loaded",
            species_ids=species_ids,
            anat_entity_count=len(anat_entities.ancestors_of_child),
            stage_count=len(stages.ancestors_of_child),
        )
        return SpeciesRelations(anat_entities=anat_entities, stages=stages)

    def load_non_informative_anat_entities(self) -> set[str]:
        rows = self.conn.execute(
            "SELECT anat_entity_id FROM anat_entity WHERE non_informative"
        ).fetchall()
        return {row[0] for row in rows}

    def load_names(self, species_id: str) -> dict[str, dict[str, str]]:
        """
        Names of genes of a species, and of all anatomical entities and stages.

        Returns:
            Dict with keys "gene", "anat_entity", "stage", each mapping IDs to names
        """
        genes = self.conn.execute(
            "SELECT gene_id, gene_name FROM gene WHERE species_id = ?",
            [species_id],
        ).fetchall()
        anat_entities = self.conn.execute(
            "SELECT anat_entity_id, anat_entity_name FROM anat_entity"
        ).fetchall()
        stages = self.conn.execute("SELECT stage_id, stage_name FROM stage").fetchall()
        return {
            "gene": {gene_id: name or "" for gene_id, name in genes},
            "anat_entity": {anat_id: name or "" for anat_id, name in anat_entities},
            "stage": {stage_id: name or "" for stage_id, name in stages},
        }

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _load_calls(self, call_class: type, species_id: str, is_global: bool) -> list:
        table, id_column, _, _ = _CALL_TABLES[call_class]
        df = self.conn.execute(
            f"""
            SELECT c.*
            FROM {table} c
            JOIN gene g ON g.gene_id = c.gene_id
            WHERE g.species_id = ? AND c.is_global = ?
            ORDER BY c.gene_id, c.anat_entity_id, c.stage_id, c.{id_column}
            """,
            [species_id, is_global],
        ).pl()

        data_types = EXPRESSION_DATA_TYPES if call_class is ExpressionCall else NO_EXPRESSION_DATA_TYPES
        origin_class = ExpressionOrigin if call_class is ExpressionCall else NoExpressionOrigin

        calls = []
        for row in df.iter_rows(named=True):
            calls.append(
                call_class(
                    id=row[id_column],
                    gene_id=row["gene_id"],
                    anat_entity_id=row["anat_entity_id"],
                    stage_id=row["stage_id"],
                    is_global=row["is_global"],
                    origin=origin_class(row["origin"]),
                    **{
                        data_type.field_name: DataState.from_representation(row[data_type.field_name])
                        for data_type in data_types
                    },
                )
            )
        logger.debug(
            "calls_loaded",
            call_type=call_class.__name__,
            species_id=species_id,
            is_global=is_global,
            count=len(calls),
        )
        return calls

    def load_basic_expression_calls(self, species_id: str) -> list[ExpressionCall]:
        return self._load_calls(ExpressionCall, species_id, is_global=False)

    def load_basic_no_expression_calls(self, species_id: str) -> list[NoExpressionCall]:
        return self._load_calls(NoExpressionCall, species_id, is_global=False)

    def load_global_expression_calls(self, species_id: str) -> list[ExpressionCall]:
        return self._load_calls(ExpressionCall, species_id, is_global=True)

    def load_global_no_expression_calls(self, species_id: str) -> list[NoExpressionCall]:
        return self._load_calls(NoExpressionCall, species_id, is_global=True)

    def load_call_anat_entity_ids(self, species_ids: list[str]) -> set[str]:
        """Anatomical entities with basic expression or no-expression calls in the given species."""
        rows = self.conn.execute(
            """
            SELECT DISTINCT c.anat_entity_id
            FROM (
                SELECT gene_id, anat_entity_id FROM expression_call WHERE NOT is_global
                UNION ALL
                SELECT gene_id, anat_entity_id FROM no_expression_call WHERE NOT is_global
            ) c
            JOIN gene g ON g.gene_id = c.gene_id
            WHERE list_contains(?, g.species_id)
            """,
            [species_ids],
        ).fetchall()
        return {row[0] for row in rows}

    def get_max_call_id(self, no_expression: bool = False) -> int:
        """Highest call ID in the expression or no-expression table (0 if empty)."""
        call_class = NoExpressionCall if no_expression else ExpressionCall
        table, id_column, _, _ = _CALL_TABLES[call_class]
        result = self.conn.execute(f"SELECT COALESCE(MAX({id_column}), 0) FROM {table}").fetchone()
        return int(result[0])

    def insert_global_calls(self, calls: Iterable[ExpressionCall | NoExpressionCall]) -> int:
        """
        Insert global calls (all of the same kind) into their call table.

        Returns:
            Number of inserted calls
        """
        calls = list(calls)
        if not calls:
            return 0
        call_class = type(calls[0])
        table, _, _, _ = _CALL_TABLES[call_class]

        df = _call_frame(calls, call_class)
        self.conn.execute(f"INSERT INTO {table} ({', '.join(df.columns)}) SELECT * FROM df")
        return df.height

    def insert_join_rows(self, rows: Iterable[tuple[int, int]], no_expression: bool = False) -> int:
        """
        Insert (global call ID, basic call ID) pairs into the matching join table.

        Returns:
            Number of inserted rows
        """
        call_class = NoExpressionCall if no_expression else ExpressionCall
        _, id_column, join_table, global_id_column = _CALL_TABLES[call_class]

        rows = sorted(rows)
        if not rows:
            return 0
        df = pl.DataFrame(
            rows,
            schema={global_id_column: pl.Int64, id_column: pl.Int64},
            orient="row",
        )
        self.conn.execute(f"INSERT INTO {join_table} ({global_id_column}, {id_column}) SELECT * FROM df")
        return df.height

    def update_no_expression_calls(self, calls: Iterable[NoExpressionCall]) -> int:
        """
        Overwrite the data states of existing no-expression calls.

        Returns:
            Number of updated calls
        """
        calls = list(calls)
        if not calls:
            return 0
        updates = _call_frame(calls, NoExpressionCall)
        assignments = ", ".join(
            f"{data_type.field_name} = updates.{data_type.field_name}"
            for data_type in NO_EXPRESSION_DATA_TYPES
        )
        result = self.conn.execute(
            f"""
            UPDATE no_expression_call
            SET {assignments}
            FROM updates
            WHERE no_expression_call.no_expression_id = updates.no_expression_id
            """
        ).fetchone()
        return int(result[0])

    def delete_no_expression_calls(self, call_ids: Iterable[int]) -> int:
        """
        Delete no-expression calls by ID.

        Returns:
            Number of deleted calls
        """
        ids_df = _ids_frame(call_ids)
        if ids_df.is_empty():
            return 0
        result = self.conn.execute(
            "DELETE FROM no_expression_call WHERE no_expression_id IN (SELECT call_id FROM ids_df)"
        ).fetchone()
        return int(result[0])

    def update_raw_data_exclusion(self, data_type: DataType, call_ids: Iterable[int]) -> int:
        """
        Detach raw data of one data type from conflicting no-expression calls.

        The foreign key to the no-expression call is cleared and the row is
        flagged as excluded for no-expression conflict. Several raw data rows
        can point to the same call, so the returned count is not checked by callers.

        Returns:
            Number of updated raw data rows
        """
        table = RAW_DATA_TABLES.get(data_type)
        if table is None:
            raise ValueError(f"No raw data table for data type {data_type.value}")

        ids_df = _ids_frame(call_ids)
        if ids_df.is_empty():
            return 0
        result = self.conn.execute(
            f"""
            UPDATE {table}
            SET no_expression_id = NULL, reason_for_exclusion = ?
            WHERE no_expression_id IN (SELECT call_id FROM ids_df)
            """,
            [NO_EXPRESSION_CONFLICT],
        ).fetchone()
        return int(result[0])

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False

    @classmethod
    def from_config(cls, config: "PipelineConfig") -> "CallStore":
        """
        Create CallStore from a PipelineConfig.

        Args:
            config: PipelineConfig instance

        Returns:
            CallStore instance
        """
        return cls(config.duckdb_path)
