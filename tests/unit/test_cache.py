"""Tests for cache utilities."""

from __future__ import annotations

import time
from unittest.mock import patch

import psa_operator.utils.cache

from psa_operator.utils.cache import (
    get_cached_object,
    invalidate_cache,
    make_cache_key,
    set_cached_object,
)


class TestCacheKey:
    """Test cases for make_cache_key function."""

    def test_make_cache_key(self):
        """Test making cache key."""
        key = make_cache_key("VSphereCluster", "default", "cluster-a")
        assert key == "VSphereCluster:default:cluster-a"

    def test_make_cache_key_with_discriminators(self):
        """Test that the uid becomes part of the key."""
        key = make_cache_key("VSphereCluster", "default", "cluster-a", "uid-1")
        assert key == "VSphereCluster:default:cluster-a:uid-1"

    def test_recreated_cluster_gets_new_key(self):
        """Test cache keys differ when only the uid differs."""
        key1 = make_cache_key("VSphereCluster", "ns1", "c", "uid-1")
        key2 = make_cache_key("VSphereCluster", "ns1", "c", "uid-2")

        assert key1 != key2


class TestCacheOperations:
    """Test cases for cache get/set operations."""

    def setup_method(self):
        """Clear cache before each test."""
        invalidate_cache()

    def test_set_and_get_cached_object(self):
        """Test setting and getting cached object."""
        key = "test:key:1"
        obj = object()

        set_cached_object(key, obj)

        assert get_cached_object(key) is obj

    def test_get_nonexistent_object(self):
        """Test getting non-existent cached object returns None."""
        assert get_cached_object("nonexistent:key") is None

    def test_cache_expiration(self):
        """Test that cached objects expire after TTL."""
        key = "test:key:expire"
        obj = {"data": "test"}

        with patch("psa_operator.utils.cache._cache_ttl", 0.1):
            set_cached_object(key, obj)
            assert get_cached_object(key) == obj

            time.sleep(0.2)

            assert get_cached_object(key) is None

    def test_cache_overwrite(self):
        """Test that setting same key overwrites previous value."""
        key = "test:key:overwrite"

        set_cached_object(key, {"version": 1})
        set_cached_object(key, {"version": 2})

        assert get_cached_object(key) == {"version": 2}

    def test_set_sweeps_expired_entries(self):
        """Test that storing an entry drops the ones past their TTL."""
        with patch("psa_operator.utils.cache.time.time", return_value=1000.0):
            set_cached_object("old:1", {"data": 1})
            set_cached_object("old:2", {"data": 2})

        with patch("psa_operator.utils.cache.time.time", return_value=1000.0 + 301.0):
            with patch("psa_operator.utils.cache._cache_ttl", 300.0):
                set_cached_object("new:1", {"data": 3})

        assert list(psa_operator.utils.cache._cache) == ["new:1"]


class TestCacheInvalidation:
    """Test cases for cache invalidation."""

    def setup_method(self):
        """Clear cache before each test."""
        invalidate_cache()

    def test_invalidate_all_cache(self):
        """Test invalidating all cache entries."""
        set_cached_object("key1", {"data": 1})
        set_cached_object("key2", {"data": 2})

        invalidate_cache()

        assert get_cached_object("key1") is None
        assert get_cached_object("key2") is None

    def test_invalidate_cache_with_pattern(self):
        """Test invalidating cache entries matching pattern."""
        set_cached_object("VSphereCluster:ns1:c1", {"name": "c1"})
        set_cached_object("VSphereCluster:ns2:c2", {"name": "c2"})

        invalidate_cache("ns1")

        assert get_cached_object("VSphereCluster:ns1:c1") is None
        assert get_cached_object("VSphereCluster:ns2:c2") is not None

    def test_invalidate_empty_cache(self):
        """Test invalidating empty cache doesn't error."""
        invalidate_cache()
        invalidate_cache("pattern")
