import asyncio

import pytest

from conftest import FakeStrategy
from matter_crawler.batch import BatchOrchestrator, split_range
from matter_crawler.collectors.list_collector import ListCollector
from matter_crawler.errors import CancellationError
from matter_crawler.models import CrawlingRange
from matter_crawler.state import CrawlState


def _bounds(plans):
    return [(p.range.start_page, p.range.end_page) for p in plans]


class TestSplitRange:
    def test_hundred_pages_in_batches_of_thirty(self):
        plans = split_range(CrawlingRange(100, 1), 30)
        assert _bounds(plans) == [(100, 71), (70, 41), (40, 11), (10, 1)]
        assert [p.batch_number for p in plans] == [1, 2, 3, 4]
        assert all(p.total_batches == 4 for p in plans)

    def test_batches_cover_range_exactly_once(self):
        for start, end, size in [(57, 3, 10), (30, 1, 30), (5, 5, 3), (99, 1, 7)]:
            pages = []
            for plan in split_range(CrawlingRange(start, end), size):
                assert plan.range.page_count <= size
                pages.extend(plan.range.pages())
            assert pages == list(range(start, end - 1, -1))

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            split_range(CrawlingRange(10, 1), 0)


class TestBatchOrchestrator:
    def _orchestrator(self, strategy, config, state, **kwargs):
        collector = ListCollector(strategy, state, config)
        return BatchOrchestrator(collector, state, **kwargs)

    def test_runs_every_batch_and_hands_off_entities(self, config):
        state = CrawlState()
        handed = []

        async def on_collected(plan, entities):
            handed.append((plan.batch_number, len(entities)))

        orchestrator = self._orchestrator(FakeStrategy(total_pages=10), config, state, on_batch_collected=on_collected)
        result = asyncio.run(orchestrator.run(CrawlingRange(10, 1), 4, 2, 0.0))

        assert handed == [(1, 48), (2, 48), (3, 24)]
        assert result.completed_batches == 3
        assert not result.failed_ranges
        assert len(result.entities) == 120

    def test_sub_range_retried_as_a_whole(self, config):
        state = CrawlState()
        # Page 7 fails its whole first pass (1 + 1 page retries), then recovers.
        strategy = FakeStrategy(total_pages=10, fail_pages={7: 2})
        orchestrator = self._orchestrator(strategy, config.with_overrides(product_list_retry_count=1), state)

        result = asyncio.run(orchestrator.run(CrawlingRange(10, 1), 5, 2, 0.0))

        assert not result.failed_ranges
        assert state.batch_retries == 1
        assert state.failed_pages == set()
        # The neighbours of page 7 were fetched again with the rest of their sub-range.
        assert strategy.list_calls[8] == 2
        assert strategy.list_calls[3] == 1

    def test_exhausted_batch_keeps_partial_results(self, config):
        state = CrawlState()
        strategy = FakeStrategy(total_pages=6, fail_pages={5: 99})
        orchestrator = self._orchestrator(strategy, config.with_overrides(product_list_retry_count=0), state)

        result = asyncio.run(orchestrator.run(CrawlingRange(6, 1), 3, 1, 0.0))

        assert result.failed_ranges == [CrawlingRange(6, 4)]
        assert len(result.errors) == 1
        assert not result.critical
        assert state.failed_pages == {5}
        # pages 6, 4 from the failed batch plus 3, 2, 1
        assert len(result.entities) == 5 * 12
        assert result.completed_batches == 2

    def test_first_batch_failing_with_nothing_collected_is_critical(self, config):
        state = CrawlState()
        strategy = FakeStrategy(total_pages=4, fail_pages={4: 99, 3: 99})
        orchestrator = self._orchestrator(strategy, config.with_overrides(product_list_retry_count=0), state)

        result = asyncio.run(orchestrator.run(CrawlingRange(4, 1), 2, 0, 0.0))

        assert result.critical
        assert state.critical_failures
        assert result.completed_batches == 2

    def test_failing_batch_after_earlier_ranges_is_not_critical(self, config):
        state = CrawlState()
        strategy = FakeStrategy(total_pages=4, fail_pages={4: 99, 3: 99})
        orchestrator = self._orchestrator(strategy, config.with_overrides(product_list_retry_count=0), state)

        result = asyncio.run(orchestrator.run(CrawlingRange(4, 3), 2, 0, 0.0, collected_before=12))

        assert result.failed_ranges == [CrawlingRange(4, 3)]
        assert not result.critical
        assert not state.critical_failures

    def test_stop_between_batches(self, config):
        async def run():
            cancel = asyncio.Event()
            state = CrawlState()
            collector = ListCollector(FakeStrategy(total_pages=10), state, config, cancel=cancel)

            async def on_collected(plan, entities):
                cancel.set()

            orchestrator = BatchOrchestrator(collector, state, on_batch_collected=on_collected, cancel=cancel)
            await orchestrator.run(CrawlingRange(10, 1), 5, 0, 0.0)

        with pytest.raises(CancellationError):
            asyncio.run(run())
