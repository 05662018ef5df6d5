from dataclasses import replace

import pytest
from sqlalchemy import text

from conftest import make_entity
from matter_crawler.errors import PersistenceError
from matter_crawler.gaps import GapDetector, GapReconciler, MissingDataAnalyzer
from matter_crawler.models import CrawlingRange, DetailEntity, PageGap
from matter_crawler.planner import PageLayout


def _detail(entity, **extra):
    return DetailEntity(**entity.to_dict(), **extra)


class TestSQLAlchemySink:
    def test_insert_then_unchanged_then_updated(self, sink):
        entity = make_entity(0, 0)
        assert sink.upsert_list_entities([entity]).added == 1
        assert sink.upsert_list_entities([entity]).unchanged == 1
        result = sink.upsert_list_entities([replace(entity, model="Plug v2")])
        assert result.updated == 1
        assert sink.summary().product_count == 1

    def test_duplicate_keys_in_one_call_written_once(self, sink):
        entity = make_entity(0, 0)
        result = sink.upsert_list_entities([entity, entity])
        assert result.added == 1
        assert sink.summary().product_count == 1

    def test_entity_without_key_counts_as_failed(self, sink):
        result = sink.upsert_list_entities([make_entity(0, 0, key="")])
        assert result.failed == 1
        assert sink.summary().product_count == 0

    def test_page_queries(self, sink):
        sink.upsert_list_entities([make_entity(3, i) for i in (0, 1, 2, 4)] + [make_entity(5, 0)])
        assert sink.count_by_page(3) == 4
        assert sink.distinct_occupied_indices(3) == {0, 1, 2, 4}
        assert sink.max_page_id() == 5
        assert sink.count_by_page(9) == 0

    def test_empty_store(self, sink):
        assert sink.max_page_id() is None
        assert sink.summary().product_count == 0
        assert sink.read_run_metadata() is None

    def test_details_round_trip_categories(self, sink):
        entity = make_entity(0, 0)
        sink.upsert_list_entities([entity])
        sink.upsert_detail_entities([_detail(entity, vid="0x1234", application_categories=["Lighting", "Plug"])])
        stored = sink.list_details()
        assert len(stored) == 1
        assert stored[0].application_categories == ["Lighting", "Plug"]
        assert stored[0].vid == "0x1234"
        assert sink.detail_count() == 1

    def test_find_missing_details(self, sink):
        first, second = make_entity(0, 0), make_entity(0, 1)
        sink.upsert_list_entities([first, second])
        sink.upsert_detail_entities([_detail(first)])
        assert [e.key for e in sink.find_missing_details()] == [second.key]

    def test_run_metadata(self, sink):
        written = sink.write_run_metadata(42)
        sink.write_run_metadata(43)
        meta = sink.read_run_metadata()
        assert meta.total_count == 43
        assert sink.summary().last_updated is not None
        assert written.total_count == 42

    def test_failure_raises_persistence_error_and_keeps_earlier_commits(self, sink):
        sink.upsert_list_entities([make_entity(0, 0)])
        with sink.engine.begin() as conn:
            conn.execute(text("DROP TABLE product_details"))
        with pytest.raises(PersistenceError):
            sink.upsert_detail_entities([_detail(make_entity(0, 0))])
        assert sink.summary().product_count == 1


class TestGapDetector:
    def test_partial_page(self, sink):
        sink.upsert_list_entities([make_entity(3, i) for i in (0, 1, 2, 4)])
        sink.upsert_list_entities([make_entity(p, i) for p in (0, 1, 2) for i in range(12)])

        result = GapDetector(sink).detect(12)

        assert len(result.missing_pages) == 1
        gap = result.missing_pages[0]
        assert (gap.page_id, gap.actual_count, gap.expected_count) == (3, 4, 12)
        assert gap.missing_indices == [3, 5, 6, 7, 8, 9, 10, 11]
        assert result.partially_missing_page_ids == [3]
        assert result.total_missing_products == 8

    def test_entirely_missing_page(self, sink):
        sink.upsert_list_entities([make_entity(p, i) for p in (0, 2) for i in range(12)])
        result = GapDetector(sink).detect(12)
        assert result.completely_missing_page_ids == [1]
        assert result.missing_pages[0].is_complete_gap
        assert result.missing_pages[0].missing_indices == list(range(12))

    def test_complete_store(self, sink):
        sink.upsert_list_entities([make_entity(p, i) for p in (0, 1) for i in range(12)])
        result = GapDetector(sink).detect(12)
        assert result.missing_pages == []
        assert result.completion_percentage == 100.0

    def test_empty_store(self, sink):
        assert GapDetector(sink).detect(12).missing_pages == []

    def test_actual_plus_missing_equals_expected(self, sink):
        sink.upsert_list_entities([make_entity(p, i) for p in range(5) for i in range(0, 12, p + 1)])
        for gap in GapDetector(sink).detect(12).missing_pages:
            assert gap.actual_count + len(gap.missing_indices) == gap.expected_count


class TestGapReconciler:
    def test_maps_page_ids_to_site_ranges(self):
        gaps = [PageGap(page_id=p, actual_count=0, expected_count=12) for p in (1, 2, 5)]
        assert GapReconciler.to_ranges(gaps, PageLayout(10, 12)) == [CrawlingRange(9, 8), CrawlingRange(5, 5)]

    def test_out_of_range_page_ids_skipped(self):
        gaps = [PageGap(page_id=20, actual_count=0, expected_count=12)]
        assert GapReconciler.to_ranges(gaps, PageLayout(10, 12)) == []

    def test_partial_last_page_maps_by_missing_positions(self):
        layout = PageLayout(5, 7)
        gaps = [
            PageGap(page_id=1, actual_count=7, expected_count=12, missing_indices=[7, 8, 9, 10, 11]),
            PageGap(page_id=4, actual_count=7, expected_count=12, missing_indices=[7, 8, 9, 10, 11]),
        ]
        assert GapReconciler.to_ranges(gaps, layout) == [CrawlingRange(3, 3)]


class TestMissingDataAnalyzer:
    def test_reports_missing_details_and_gaps(self, sink):
        entities = [make_entity(0, i) for i in range(12)] + [make_entity(1, 0)]
        sink.upsert_list_entities(entities)
        sink.upsert_detail_entities([_detail(e) for e in entities[:10]])

        analysis = MissingDataAnalyzer(sink).analyze(12)

        assert len(analysis.missing_details) == 3
        assert [g.page_id for g in analysis.incomplete_pages] == [1]
        assert analysis.difference == 3
        assert analysis.to_dict()["products_count"] == 13
