"""In-process partition cache."""

from mneme.cache.partition import CachedPartition, CacheStats, PartitionCache

__all__ = ["CachedPartition", "CacheStats", "PartitionCache"]
