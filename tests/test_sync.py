"""Tests for seed and entity synchronization."""

import pytest

from pipelines.sync import SeedSynchronizer, filter_by_labels, has_label, seed_labels


def config_seed(seed_id, labels):
    return {'id': seed_id, 'entityId': 'e1', 'meta': {'label': labels}}


class TestLabels:
    def test_labels_as_key_value(self):
        seed = config_seed('s1', [{'key': 'source', 'value': 'maalfrid'}, 'plain'])
        assert seed_labels(seed) == ['source:maalfrid', 'plain']

    def test_has_label_matches_key_value_or_value(self):
        seed = config_seed('s1', [{'key': 'source', 'value': 'maalfrid'}])
        assert has_label(seed, 'source:maalfrid')
        assert has_label(seed, 'maalfrid')
        assert not has_label(seed, 'source:other')

    def test_all_labels_required(self):
        seeds = [
            config_seed('s1', [{'key': 'source', 'value': 'maalfrid'}, {'key': 'kind', 'value': 'state'}]),
            config_seed('s2', [{'key': 'source', 'value': 'maalfrid'}]),
        ]
        assert [s['id'] for s in filter_by_labels(seeds, ['source:maalfrid', 'kind:state'])] == ['s1']
        assert len(filter_by_labels(seeds, [])) == 2


class TestSeedSynchronizer:
    @pytest.fixture
    def config(self, crawl_data):
        crawl_data.crawl_entity('e1', 'Regjeringen')
        crawl_data.crawl_entity('e2', 'Unused')
        crawl_data.config_seed('s1', 'e1', [{'key': 'source', 'value': 'maalfrid'}])
        crawl_data.config_seed('s2', 'e1', [{'key': 'source', 'value': 'other'}])
        crawl_data.config_seed('s3', 'missing', [{'key': 'source', 'value': 'maalfrid'}])
        return crawl_data

    @pytest.mark.asyncio
    async def test_sync_by_label(self, store, config):
        result = await SeedSynchronizer(store).run(['source:maalfrid'])

        assert result == {'seeds': 1, 'entities': 1}
        assert [seed['id'] for seed in await store.list_seeds()] == ['s1']

    @pytest.mark.asyncio
    async def test_sync_all_skips_orphans(self, store, config, caplog):
        result = await SeedSynchronizer(store).run()

        assert result == {'seeds': 2, 'entities': 1}
        assert 's3' in caplog.text

    @pytest.mark.asyncio
    async def test_sync_replaces_existing(self, store, config):
        config.seed('s1', entity_id='old')

        await SeedSynchronizer(store).run(['maalfrid'])

        [seed] = await store.list_seeds('s1')
        assert seed['entityId'] == 'e1'
        assert seed['meta']['name'] == 's1'
