"""Tests for the statistics reducer and generator."""

from datetime import datetime

import pytest

from pipelines.statistics import (
    SHORT_TEXT_THRESHOLD,
    StatisticsGenerator,
    count_record,
    fold_counts,
    is_countable,
    merge_counts,
    reduce_executions,
)
from services.shared.store import GLOBAL_FILTER_SET_ID


def rec(execution_id, language, word_count):
    return {'executionId': execution_id, 'language': language, 'wordCount': word_count}


class TestReducer:
    """Folding records into language counts."""

    def test_short_threshold(self):
        assert count_record(rec('e1', 'NOB', SHORT_TEXT_THRESHOLD - 1)) == {'NOB': {'total': 1, 'short': 1}}
        assert count_record(rec('e1', 'NOB', SHORT_TEXT_THRESHOLD)) == {'NOB': {'total': 1, 'short': 0}}

    def test_countable_needs_language_and_word_count(self):
        assert is_countable(rec('e1', 'NOB', 0))
        assert not is_countable(rec('e1', None, 10))
        assert not is_countable(rec('e1', 'NOB', None))

    def test_fold(self):
        counts = fold_counts([rec('e1', 'NOB', 10), rec('e1', 'NOB', 5000), rec('e1', 'NNO', 10)])
        assert counts == {'NOB': {'total': 2, 'short': 1}, 'NNO': {'total': 1, 'short': 1}}

    def test_merge_is_commutative_and_associative(self):
        a = {'NOB': {'total': 2, 'short': 1}}
        b = {'NOB': {'total': 1, 'short': 0}, 'NNO': {'total': 3, 'short': 3}}
        c = {'ENG': {'total': 1, 'short': 1}}
        assert merge_counts(a, b) == merge_counts(b, a)
        assert merge_counts(merge_counts(a, b), c) == merge_counts(a, merge_counts(b, c))

    def test_merge_does_not_mutate(self):
        a = {'NOB': {'total': 2, 'short': 1}}
        merge_counts(a, {'NOB': {'total': 1, 'short': 1}})
        assert a == {'NOB': {'total': 2, 'short': 1}}

    def test_split_groups_fold_to_the_same_result(self):
        records = [rec('e1', 'NOB', n) for n in (10, 4000, 20)] + [rec('e1', 'NNO', 30)]
        whole = fold_counts(records)
        split = merge_counts(fold_counts(records[:2]), fold_counts(records[2:]))
        assert whole == split

    def test_short_never_exceeds_total(self):
        counts = fold_counts([rec('e1', 'NOB', n) for n in (1, 3499, 3500, 9000)])
        for value in counts.values():
            assert value['short'] <= value['total']

    def test_reduce_per_execution(self):
        result = reduce_executions([rec('e1', 'NOB', 10), rec('e2', 'NNO', 10), rec('e1', 'NOB', 10)])
        assert result == {
            'e1': {'NOB': {'total': 2, 'short': 2}},
            'e2': {'NNO': {'total': 1, 'short': 1}},
        }


class TestStatisticsGenerator:
    """Statistics generation against the store."""

    @pytest.fixture
    def scenario(self, crawl_data):
        crawl_data.seed('S', entity_id='E')
        crawl_data.filter_set('A', 'S', [{'name': 'language', 'value': ['NNO']}],
                              valid_from=datetime(2020, 1, 1), valid_to=datetime(2020, 6, 1))
        crawl_data.filter_set('B', 'S', [{'name': 'language', 'value': ['NOB']}],
                              valid_from=datetime(2020, 6, 1))
        crawl_data.aggregate('w1', 'S', 'e1', 'J', datetime(2020, 3, 1), 'NNO')
        crawl_data.aggregate('w2', 'S', 'e1', 'J', datetime(2020, 3, 1), 'NOB')
        crawl_data.aggregate('w3', 'S', 'e2', 'J', datetime(2020, 7, 1), 'NOB')
        crawl_data.aggregate('w4', 'S', 'e2', 'J', datetime(2020, 7, 1), 'NNO')
        return crawl_data

    @pytest.mark.asyncio
    async def test_no_cross_interval_leakage(self, store, scenario):
        run = await StatisticsGenerator(store).generate('J', 'S')

        statistics = {s['executionId']: s for s in await store.list_statistics('J', 'S')}
        assert run.statistics == 2
        assert run.intervals == 2
        assert statistics['e1']['statistic'] == {'NNO': {'total': 1, 'short': 1}}
        assert statistics['e2']['statistic'] == {'NOB': {'total': 1, 'short': 1}}
        assert statistics['e1']['entityId'] == 'E'
        assert statistics['e2']['endTime'] == datetime(2020, 7, 1)

    @pytest.mark.asyncio
    async def test_regeneration_replaces_rows(self, store, scenario):
        generator = StatisticsGenerator(store)
        await generator.generate('J', 'S')
        run = await generator.generate('J', 'S')

        assert run.deleted == 2
        assert len(await store.list_statistics('J', 'S')) == 2

    @pytest.mark.asyncio
    async def test_global_filters_apply_to_every_interval(self, store, scenario):
        scenario.filter_set(GLOBAL_FILTER_SET_ID, GLOBAL_FILTER_SET_ID,
                            [{'name': 'language', 'value': ['NOB'], 'exclusive': True}])

        run = await StatisticsGenerator(store).generate('J', 'S')

        statistics = {s['executionId']: s for s in await store.list_statistics('J', 'S')}
        assert run.statistics == 1
        assert set(statistics) == {'e1'}

    @pytest.mark.asyncio
    async def test_seed_without_filter_sets_counts_everything(self, store, crawl_data):
        crawl_data.seed('T', entity_id='E')
        crawl_data.aggregate('w1', 'T', 'e1', 'J', datetime(2021, 1, 1), 'NOB', word_count=100)
        crawl_data.aggregate('w2', 'T', 'e1', 'J', datetime(2021, 1, 1), 'NOB', word_count=5000)

        await StatisticsGenerator(store).generate('J')

        [statistic] = await store.list_statistics('J', 'T')
        assert statistic['statistic'] == {'NOB': {'total': 2, 'short': 1}}

    @pytest.mark.asyncio
    async def test_failing_filter_skips_record(self, store, crawl_data):
        crawl_data.seed('T', entity_id='E')
        crawl_data.filter_set('A', 'T', [{'name': 'matchRegexp', 'value': 'x', 'field': 'wordCount'}])
        crawl_data.aggregate('w1', 'T', 'e1', 'J', datetime(2021, 1, 1), 'NOB')

        run = await StatisticsGenerator(store).generate('J', 'T')

        assert run.skipped_records == 1
        assert run.statistics == 0

    @pytest.mark.asyncio
    async def test_missing_word_count_skips_record(self, store, crawl_data):
        crawl_data.seed('T', entity_id='E')
        crawl_data.aggregate('w1', 'T', 'e1', 'J', datetime(2021, 1, 1), 'NOB', word_count=None)
        crawl_data.aggregate('w2', 'T', 'e1', 'J', datetime(2021, 1, 1), 'NOB', word_count=100)

        run = await StatisticsGenerator(store).generate('J', 'T')

        [statistic] = await store.list_statistics('J', 'T')
        assert run.skipped_records == 1
        assert statistic['statistic'] == {'NOB': {'total': 1, 'short': 1}}

    @pytest.mark.asyncio
    async def test_missing_language_is_not_counted(self, store, crawl_data):
        crawl_data.seed('T', entity_id='E')
        crawl_data.aggregate('w1', 'T', 'e1', 'J', datetime(2021, 1, 1), None)

        run = await StatisticsGenerator(store).generate('J', 'T')

        assert run.skipped_records == 1
        assert run.statistics == 0
        assert await store.list_statistics('J', 'T') == []
