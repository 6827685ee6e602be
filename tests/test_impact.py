"""Tests for the impact analyzer."""

from db_agent.idempotency import rls_policy_sql
from db_agent.impact import ImpactAnalysis, analyze_impact
from db_agent.state import DatabaseState, SystemState


def _state(tables=(), indexes=()):
    return SystemState(database=DatabaseState(tables=list(tables), indexes=list(indexes)))


class TestAnalyzeImpact:
    """Tests for analyze_impact."""

    def test_new_table_and_index_against_empty_state(self):
        sql = (
            "CREATE TABLE IF NOT EXISTS recently_played (id UUID PRIMARY KEY); "
            "CREATE INDEX idx_rp ON recently_played(id);"
        )

        impact = analyze_impact(sql, _state())

        assert impact.tables_created == ["recently_played"]
        assert impact.indexes_created == ["idx_rp"]
        assert impact.tables_modified == []
        assert impact.requires_idempotency_check is False

    def test_existing_table_is_modified(self):
        sql = "CREATE TABLE IF NOT EXISTS songs (id int);\nCREATE TABLE albums (id int);"

        impact = analyze_impact(sql, _state(tables=["songs"]))

        assert impact.tables_created == ["albums"]
        assert impact.tables_modified == ["songs"]
        assert impact.requires_idempotency_check is True

    def test_existing_index_is_a_potential_conflict(self):
        sql = "CREATE UNIQUE INDEX IF NOT EXISTS idx_songs ON songs (id);"

        impact = analyze_impact(sql, _state(tables=["songs"], indexes=["idx_songs"]))

        assert impact.indexes_created == ["idx_songs"]
        assert impact.potential_conflicts == ["index idx_songs already exists"]
        assert impact.requires_idempotency_check is True

    def test_policies_top_level_and_in_do_blocks(self):
        sql = (
            "CREATE POLICY songs_read ON songs FOR SELECT USING (true);\n"
            + rls_policy_sql("albums", "albums_read", "SELECT", "true")
        )

        impact = analyze_impact(sql, _state())

        assert impact.policies_created == ["songs_read", "albums_read"]

    def test_quoted_and_qualified_names(self):
        sql = 'CREATE TABLE public."Play Log" (id int);'

        assert analyze_impact(sql, _state()).tables_created == ["Play Log"]

    def test_keywords_in_literals_ignored(self):
        sql = "INSERT INTO notes (body) VALUES ('CREATE TABLE ghost (id int);');"

        assert analyze_impact(sql, _state()) == ImpactAnalysis()

    def test_repeated_statements_listed_once(self):
        sql = "CREATE TABLE IF NOT EXISTS a (id int);\nCREATE TABLE IF NOT EXISTS a (id int);"

        assert analyze_impact(sql, _state()).tables_created == ["a"]
