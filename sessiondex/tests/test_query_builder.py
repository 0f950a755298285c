import unittest
from datetime import date

from sessiondex.errors import InvalidQuery
from sessiondex.query_builder import (
    AnalyzedFilter,
    ChainFilter,
    DateRangeFilter,
    ProjectFilter,
    SearchTermFilter,
    SessionQuery,
    build_count_query,
    build_session_query,
)
from sessiondex.search import NO_MATCH_SENTINEL, sanitize_fts_query


class SanitizeFtsQueryTests(unittest.TestCase):
    def test_operators_and_syntax_are_stripped(self) -> None:
        self.assertEqual(sanitize_fts_query('NEAR(foo bar) "baz" OR qux*'), '"foo" "bar" "baz" "qux"')
        self.assertEqual(sanitize_fts_query("title:deploy ^urgent +fix"), '"title" "deploy" "urgent" "fix"')
        self.assertEqual(sanitize_fts_query("-secret AND NOT public"), '"secret" "public"')

    def test_operator_words_are_case_insensitive(self) -> None:
        self.assertEqual(sanitize_fts_query("cats and dogs or birds"), '"cats" "dogs" "birds"')

    def test_empty_results_become_sentinel(self) -> None:
        self.assertEqual(sanitize_fts_query(""), NO_MATCH_SENTINEL)
        self.assertEqual(sanitize_fts_query(None), NO_MATCH_SENTINEL)
        self.assertEqual(sanitize_fts_query('AND OR NOT "" ()*'), NO_MATCH_SENTINEL)

    def test_long_input_is_truncated(self) -> None:
        sanitized = sanitize_fts_query("a" * 500)
        self.assertEqual(sanitized, '"' + "a" * 200 + '"')

    def test_hyphenated_words_stay_literal(self) -> None:
        self.assertEqual(sanitize_fts_query("follow-up"), '"follow-up"')


class QueryBuilderTests(unittest.TestCase):
    def test_default_query_has_no_optional_joins(self) -> None:
        sql, params = build_session_query(SessionQuery())
        self.assertIn("FROM sessions m", sql)
        self.assertIn("a.file_hash AS analysis_fingerprint", sql)
        self.assertNotIn("analysis_title", sql)
        self.assertNotIn("session_continuations", sql)
        self.assertNotIn("session_fts", sql)
        self.assertIn("ORDER BY m.last_message_time DESC", sql)
        self.assertEqual(params, (50, 0))

    def test_include_flags_add_joins(self) -> None:
        sql, _ = build_session_query(SessionQuery(include_analysis=True, include_continuation_count=True))
        self.assertIn("LEFT JOIN session_analysis_cache a", sql)
        self.assertIn("LEFT JOIN session_continuations sc", sql)
        self.assertIn("continuation_count", sql)

    def test_values_are_bound_not_interpolated(self) -> None:
        query = SessionQuery(
            filters=(ProjectFilter("/srv/app'; DROP TABLE sessions; --"), AnalyzedFilter(True)),
            limit=10,
            offset=20,
        )
        sql, params = build_session_query(query)
        self.assertNotIn("DROP TABLE", sql)
        self.assertEqual(params, ("/srv/app'; DROP TABLE sessions; --", 10, 20))

    def test_analyzed_filter_compares_fingerprints_and_age(self) -> None:
        sql, params = build_count_query(SessionQuery(filters=(AnalyzedFilter(False, fresh_since=1_700_000_000),)))
        self.assertIn("NOT EXISTS (SELECT 1 FROM session_analysis_cache v", sql)
        self.assertIn("v.file_hash = m.content_hash", sql)
        self.assertIn("v.analysis_timestamp >= ?", sql)
        self.assertEqual(params, (1_700_000_000,))

    def test_search_term_uses_fts_rank(self) -> None:
        query = SessionQuery(filters=(SearchTermFilter("deploy pipeline"),))
        sql, params = build_session_query(query)
        self.assertIn("FROM session_fts JOIN sessions m", sql)
        self.assertIn("session_fts MATCH ?", sql)
        self.assertIn("ORDER BY session_fts.rank ASC, m.last_message_time DESC", sql)
        self.assertEqual(params[0], '"deploy" "pipeline"')

    def test_date_only_upper_bound_includes_whole_day(self) -> None:
        query = SessionQuery(filters=(DateRangeFilter(date(2026, 1, 1), date(2026, 1, 31)),))
        sql, params = build_session_query(query)
        self.assertIn("m.last_message_time >= ?", sql)
        self.assertIn("m.last_message_time < ?", sql)
        self.assertEqual(params[:2], ("2026-01-01T00:00:00.000Z", "2026-02-01T00:00:00.000Z"))

    def test_chain_filter_expands_placeholders(self) -> None:
        sql, params = build_session_query(SessionQuery(filters=(ChainFilter(("a", "b", "c")),)))
        self.assertIn("m.session_id IN (?, ?, ?)", sql)
        self.assertEqual(params[:3], ("a", "b", "c"))

    def test_building_is_deterministic(self) -> None:
        query = SessionQuery(filters=(ProjectFilter("/p"), SearchTermFilter("x")), include_analysis=True)
        self.assertEqual(build_session_query(query), build_session_query(query))
        self.assertEqual(build_count_query(query), build_count_query(query))

    def test_count_query_has_no_pagination(self) -> None:
        sql, params = build_count_query(SessionQuery(filters=(ProjectFilter("/p"),), limit=5, offset=5))
        self.assertTrue(sql.startswith("SELECT COUNT(*)"))
        self.assertNotIn("LIMIT", sql)
        self.assertEqual(params, ("/p",))

    def test_include_empty_drops_base_condition(self) -> None:
        sql, _ = build_count_query(SessionQuery(include_empty=True))
        self.assertNotIn("is_empty", sql)

    def test_invalid_queries_are_rejected(self) -> None:
        invalid = [
            SessionQuery(sort="file_path; DROP TABLE sessions"),
            SessionQuery(sort="relevance"),
            SessionQuery(limit=0),
            SessionQuery(offset=-1),
            SessionQuery(filters=(ChainFilter(()),)),
            SessionQuery(filters=(ProjectFilter("/a"), ProjectFilter("/b"))),
            SessionQuery(filters=(DateRangeFilter(date(2026, 2, 1), date(2026, 1, 1)),)),
            SessionQuery(filters=(DateRangeFilter(None, None),)),
        ]
        for query in invalid:
            with self.subTest(query=query):
                with self.assertRaises(InvalidQuery):
                    build_session_query(query)


if __name__ == "__main__":
    unittest.main()
