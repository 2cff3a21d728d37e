import logging
import re
from dataclasses import replace
from pathlib import Path

import pytest

from query_export.core.csv_export import CsvFormatSpec
from query_export.core.errors import ConfigurationInvalid, ExportIncomplete, QueryExecutionFailed
from query_export.core.exporter import Exporter, expression_alias, parse_select_aliases
from query_export.core.query_source import QueryDefinition

from .conftest import FakeDB, make_result

ORDERS = QueryDefinition("orders", "SELECT o.order_id AS id, o.name FROM orders o")


def exporter_for(config, db, **export):
    if export:
        config = replace(config, export=replace(config.export, **export))
    return Exporter(config, db_factory=lambda: db)


class TestHeaderHeuristic:
    def test_aliases_dots_and_bare_columns(self):
        sql = """SELECT
            o.order_id,
            o.customer_id AS customer,
            `o`.`total_amount`,
            status
        FROM orders o"""
        assert parse_select_aliases(sql) == ["order_id", "customer", "total_amount", "status"]

    def test_function_calls_keep_their_commas(self):
        sql = "SELECT CONCAT(first, ', ', last) AS full_name, COUNT(*) FROM people GROUP BY 1"
        assert parse_select_aliases(sql) == ["full_name", "COUNT(*)"]

    def test_implicit_alias_and_distinct(self):
        assert parse_select_aliases("select distinct p.price net_price, p.id from p") == ["net_price", "id"]

    def test_subquery_and_cte_use_outer_select_list(self):
        sql = ("WITH recent AS (SELECT id FROM orders) "
               "SELECT r.id, (SELECT MAX(x) FROM y) AS top FROM recent r")
        assert parse_select_aliases(sql) == ["id", "top"]

    def test_star_projection_gives_no_header(self):
        assert parse_select_aliases("SELECT * FROM orders") is None
        assert parse_select_aliases("SELECT o.*, p.id FROM o JOIN p") is None

    def test_no_from_gives_no_header(self):
        assert parse_select_aliases("SHOW TABLES") is None

    def test_known_limit_comma_inside_string_literal(self):
        # string literals are not tokenized, so the comma splits the expression
        assert parse_select_aliases("SELECT 'a,b' AS label, id FROM t") == ["'a", "label", "id"]

    def test_known_limit_arithmetic_without_alias(self):
        assert expression_alias("price * 2") == "2"


class TestClientSide:
    def test_writes_header_and_rows(self, config):
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [(1, "Alice"), (2, "Bob, Jr.")])})
        artifact = exporter_for(config, db).export(ORDERS)

        assert artifact.path == Path(config.export.local_dir) / "orders.csv"
        assert artifact.name == "orders.csv"
        assert artifact.rows == 2
        assert artifact.header == ["id", "name"]
        assert artifact.path.read_bytes() == b'"id","name"\n"1","Alice"\n"2","Bob, Jr."\n'
        assert db.executed == [ORDERS.body]

    def test_header_toggle_off(self, config):
        config = replace(config, csv=CsvFormatSpec(header=False))
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [(1, None)])})

        artifact = exporter_for(config, db).export(ORDERS)
        assert artifact.path.read_bytes() == b'"1",""\n'

    def test_falls_back_to_query_text_when_metadata_missing(self, config, caplog):
        db = FakeDB(results={ORDERS.body: make_result([], [(1, "Alice")])}, header_probe=False)

        with caplog.at_level(logging.WARNING):
            artifact = exporter_for(config, db).export(ORDERS)

        assert artifact.path.read_bytes() == b'"id","name"\n"1","Alice"\n'
        assert "derived from query text" in caplog.text

    def test_proceeds_without_header_when_nothing_works(self, config, caplog):
        query = QueryDefinition("everything", "SELECT * FROM orders")
        db = FakeDB(results={query.body: make_result([], [(1, "Alice")])}, header_probe=False)

        with caplog.at_level(logging.WARNING):
            artifact = exporter_for(config, db).export(query)

        assert artifact.header is None
        assert artifact.path.read_bytes() == b'"1","Alice"\n'
        assert "without one" in caplog.text

    def test_query_failure_is_wrapped(self, config):
        db = FakeDB(results={ORDERS.body: make_result(["id"], [])}, failing={"orders"})

        with pytest.raises(QueryExecutionFailed, match="doesn't exist"):
            exporter_for(config, db).export(ORDERS)

    def test_existing_file_is_replaced(self, config):
        local = Path(config.export.local_dir)
        local.mkdir()
        (local / "orders.csv").write_text("stale")
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [])})

        artifact = exporter_for(config, db).export(ORDERS)
        assert artifact.path == local / "orders.csv"
        assert artifact.path.read_bytes() == b'"id","name"\n'

    def test_unremovable_file_gets_collision_name(self, config):
        local = Path(config.export.local_dir)
        (local / "orders.csv").mkdir(parents=True)
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [(1, "a")])})

        artifact = exporter_for(config, db).export(ORDERS)

        assert re.fullmatch(r"orders_\d{8}_\d{6}_[0-9a-f]{6}\.csv", artifact.path.name)
        assert artifact.name == "orders.csv"
        assert (local / "orders.csv").is_dir()


class TestServerSide:
    @pytest.fixture
    def server_dir(self, config):
        path = Path(config.export.server_dir)
        path.mkdir()
        return path

    def writer(self, content):
        def on_execute(sql):
            path = re.search(r"INTO OUTFILE '([^']+)'", sql).group(1)
            assert not Path(path).exists(), "engine refuses to overwrite"
            Path(path).write_bytes(content)
            return content.count(b"\n")
        return on_execute

    def test_appends_export_clause_and_prepends_header(self, config, server_dir):
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [])},
                    on_execute=self.writer(b'"1","Alice"\n'))
        artifact = exporter_for(config, db, mode="server").export(ORDERS)

        statement = db.executed[-1]
        assert statement.startswith(ORDERS.body + "\nINTO OUTFILE ")
        assert f"'{server_dir / 'orders.csv.rows'}'" in statement
        assert artifact.path == Path(config.export.local_dir) / "orders.csv"
        assert artifact.path.read_bytes() == b'"id","name"\n"1","Alice"\n'
        assert artifact.rows == 1
        assert not (server_dir / "orders.csv.rows").exists()

    def test_without_header_the_engine_file_is_the_artifact(self, config, server_dir):
        config = replace(config, csv=CsvFormatSpec(header=False))
        (server_dir / "orders.csv").write_text("stale")
        db = FakeDB(on_execute=self.writer(b'"1","Alice"\n'))

        artifact = exporter_for(config, db, mode="server").export(ORDERS)

        assert artifact.path == server_dir / "orders.csv"
        assert artifact.path.read_bytes() == b'"1","Alice"\n'

    def test_undeletable_stale_file_fails_before_execution(self, config, server_dir):
        (server_dir / "orders.csv.rows").mkdir()
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [])},
                    on_execute=self.writer(b'"1","Alice"\n'))

        with pytest.raises(ExportIncomplete, match="cannot be removed") as excinfo:
            exporter_for(config, db, mode="server").export(ORDERS)

        assert excinfo.value.context["path"] == str(server_dir / "orders.csv.rows")
        assert excinfo.value.context["error"]
        assert db.executed == []
        assert sorted(p.name for p in server_dir.iterdir()) == ["orders.csv.rows"]

    def test_missing_file_reports_diagnostics(self, config, server_dir):
        (server_dir / "other.csv").write_text("x")
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [])},
                    variables={"secure_file_priv": "/var/lib/mysql-files/"})

        with pytest.raises(ExportIncomplete) as excinfo:
            exporter_for(config, db, mode="server").export(ORDERS)

        context = excinfo.value.context
        assert context["listing"] == ["other.csv"]
        assert context["secure_file_priv"] == "/var/lib/mysql-files/"

    def test_engine_error_is_query_failure(self, config, server_dir):
        db = FakeDB(results={ORDERS.body: make_result(["id", "name"], [])}, failing={"OUTFILE"})

        with pytest.raises(QueryExecutionFailed):
            exporter_for(config, db, mode="server").export(ORDERS)


class TestServerDirAlignment:
    def test_uses_reported_directory(self, config):
        db = FakeDB(variables={"secure_file_priv": "/srv/mysql-files/"})
        exporter = exporter_for(config, db, mode="server")

        assert exporter.align_server_dir() == Path("/srv/mysql-files")
        assert exporter.server_dir == Path("/srv/mysql-files")

    def test_unrestricted_keeps_configured_directory(self, config):
        exporter = exporter_for(config, FakeDB(variables={"secure_file_priv": ""}), mode="server")
        assert exporter.align_server_dir() == Path(config.export.server_dir)

    def test_null_means_file_export_disabled(self, config):
        exporter = exporter_for(config, FakeDB(variables={"secure_file_priv": None}), mode="server")
        with pytest.raises(ConfigurationInvalid, match="secure_file_priv"):
            exporter.align_server_dir()

    def test_prepare_in_server_mode_warns_about_null_rendering(self, config, caplog):
        db = FakeDB(variables={"secure_file_priv": ""})

        with caplog.at_level(logging.WARNING):
            exporter_for(config, db, mode="server").prepare()

        assert 'NULL as "N' in caplog.text
        assert db.connections == 1

    def test_prepare_only_aligns_in_server_mode(self, config, caplog):
        db = FakeDB(variables={"secure_file_priv": None})
        with caplog.at_level(logging.WARNING):
            local = exporter_for(config, db).prepare()

        assert local.is_dir()
        assert db.connections == 0
        assert "NULL" not in caplog.text
