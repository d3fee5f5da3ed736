from __future__ import annotations

from .metadata import MetadataStore
from .models import TagCount


class TagRegistry:
    """Tag usage counts derived on demand from the metadata store; never persisted."""

    def __init__(self, metadata: MetadataStore) -> None:
        self._metadata = metadata

    def counts(self) -> list[TagCount]:
        return [TagCount(name=name, count=count) for name, count in self._metadata.all_tags().items()]

    def paths_for(self, tag: str) -> list[str]:
        return [path for path, record in self._metadata.list().items() if tag in record.tags]
