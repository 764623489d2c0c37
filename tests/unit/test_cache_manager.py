"""
Unit tests for the LRU + TTL cache.
"""

import re

import pytest

from kra_connect.cache_manager import CacheManager, request_fingerprint


class TestRequestFingerprint:
    """Test cases for cache key derivation."""

    def test_normalizes_identifier(self):
        assert request_fingerprint('verify_pin', ' p051234567a ') == request_fingerprint('verify_pin', 'P051234567A')

    def test_operation_prefix_kept_in_clear(self):
        key = request_fingerprint('verify_tcc', 'TCC123456')
        prefix, digest = key.split(':')
        assert prefix == 'verify_tcc'
        assert len(digest) == 32

    def test_operations_do_not_collide(self):
        assert request_fingerprint('verify_pin', 'P051234567A') != request_fingerprint(
            'get_taxpayer_details', 'P051234567A'
        )

    def test_multiple_identifiers(self):
        a = request_fingerprint('file_nil_return', 'P051234567A', 'VAT', '2024-01')
        b = request_fingerprint('file_nil_return', 'P051234567A', 'VAT', '2024-02')
        assert a != b


class TestCacheManager:
    """Test cases for CacheManager."""

    @pytest.fixture
    def cache(self, clock):
        return CacheManager(max_size=3, default_ttl=60.0, name='unit', clock=clock)

    def test_set_and_get(self, cache):
        cache.set('k', {'value': 1})
        assert cache.get('k') == {'value': 1}
        assert cache.has('k')

    def test_miss_returns_none(self, cache):
        assert cache.get('missing') is None

    def test_expires_exactly_at_ttl(self, cache, clock):
        """An entry is expired once now reaches expires_at."""
        cache.set('k', 'v', ttl=10)

        clock.advance(9)
        assert cache.get('k') == 'v'

        clock.advance(1)
        assert cache.get('k') is None
        assert cache.size() == 0

    def test_lru_eviction(self, cache):
        cache.set('a', 1)
        cache.set('b', 2)
        cache.set('c', 3)

        # Touch 'a' so 'b' becomes least recently used
        cache.get('a')
        cache.set('d', 4)

        assert cache.keys() == ['c', 'a', 'd']
        assert cache.get('b') is None
        assert cache.size() == 3

    def test_overwrite_refreshes_position(self, cache):
        cache.set('a', 1)
        cache.set('b', 2)
        cache.set('a', 10)

        assert cache.keys() == ['b', 'a']
        assert cache.get('a') == 10

    def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set('k', 'v', ttl=0)

    def test_invalid_construction(self):
        with pytest.raises(ValueError):
            CacheManager(max_size=-1)
        with pytest.raises(ValueError):
            CacheManager(default_ttl=0)

    def test_stats_do_not_remove_expired(self, cache, clock):
        cache.set('old', 1, ttl=5)
        cache.set('new', 2, ttl=50)
        clock.advance(10)

        stats = cache.get_stats()

        assert stats['size'] == 2
        assert stats['expired_count'] == 1
        assert stats['valid_count'] == 1
        assert stats['max_size'] == 3
        assert cache.size() == 2

    def test_cleanup_removes_expired(self, cache, clock):
        cache.set('old', 1, ttl=5)
        cache.set('new', 2, ttl=50)
        clock.advance(10)

        assert cache.cleanup() == 1
        assert cache.keys() == ['new']
        assert cache.valid_keys() == ['new']

    def test_remove_pattern_with_regex(self, cache):
        cache.set('verify_pin:aaa', 1)
        cache.set('verify_pin:bbb', 2)
        cache.set('verify_tcc:ccc', 3)

        assert cache.remove_pattern(r'^verify_pin:') == 2
        assert cache.keys() == ['verify_tcc:ccc']

    def test_remove_pattern_with_predicate(self, cache):
        cache.set('x1', 1)
        cache.set('y1', 2)

        assert cache.remove_pattern(lambda key: key.startswith('y')) == 1
        assert cache.remove_pattern(re.compile('^z')) == 0
        assert cache.keys() == ['x1']

    def test_remove_and_clear(self, cache):
        cache.set('a', 1)
        cache.set('b', 2)

        assert cache.remove('a') is True
        assert cache.remove('a') is False

        cache.clear()
        assert cache.is_empty
        assert len(cache) == 0

    def test_is_full(self, cache):
        for key in 'abc':
            cache.set(key, key)
        assert cache.is_full
