"""Synchronize seeds and their owning entities from the crawler configuration."""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from services.shared.store import DocumentStore

logger = logging.getLogger(__name__)


def seed_labels(seed: Mapping[str, Any]) -> List[str]:
    """Labels of a seed as ``key:value`` strings."""
    labels = []
    for label in (seed.get('meta') or {}).get('label') or []:
        if isinstance(label, Mapping):
            labels.append(f"{label.get('key', '')}:{label.get('value', '')}")
        else:
            labels.append(str(label))
    return labels


def has_label(seed: Mapping[str, Any], label: str) -> bool:
    """True if the seed carries the label, given as ``key:value`` or just ``value``."""
    for candidate in seed_labels(seed):
        if candidate == label or candidate.split(':', 1)[-1] == label:
            return True
    return False


def filter_by_labels(seeds: Iterable[Mapping[str, Any]], labels: Sequence[str]) -> List[Mapping[str, Any]]:
    """Seeds carrying every one of the given labels."""
    return [seed for seed in seeds if all(has_label(seed, label) for label in labels)]


class SeedSynchronizer:
    """Copies seeds and entities into the aggregator's own tables."""

    def __init__(self, store: DocumentStore, log: Optional[logging.Logger] = None):
        self.store = store
        self.log = log or logger

    async def run(self, labels: Optional[Sequence[str]] = None) -> Dict[str, int]:
        """Pull seeds, optionally filtered by label, and the entities owning them."""
        labels = list(labels or [])
        seeds = filter_by_labels(await self.store.list_config_seeds(), labels)

        entity_ids = sorted({seed['entityId'] for seed in seeds})
        entities = await self.store.get_crawl_entities(entity_ids)
        known_entities = {entity['id'] for entity in entities}

        orphans = [seed['id'] for seed in seeds if seed['entityId'] not in known_entities]
        if orphans:
            self.log.warning(f"Skipping {len(orphans)} seeds without a crawl entity: {orphans}")
        seeds = [seed for seed in seeds if seed['entityId'] in known_entities]

        entity_count = await self.store.upsert_entities(entities)
        seed_count = await self.store.upsert_seeds(seeds)

        self.log.info(f"Synchronized {seed_count} seeds and {entity_count} entities (labels={labels})")
        return {'seeds': seed_count, 'entities': entity_count}
