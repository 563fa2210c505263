"""
Unit tests for the sequence coordinate cache and session store
"""

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, Mock

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import SequenceImage
from graph_api.sequence_cache import SequenceCoordinateCache, SessionStore, assemble_in_order


def _geom(lon, lat):
    return {"geometry": {"type": "Point", "coordinates": [lon, lat]}}


def _api(ids=None, by_id=None):
    api = Mock()
    api.fetch_sequence_image_ids = AsyncMock(return_value=ids)
    api.fetch_images_by_ids = AsyncMock(return_value=by_id)
    return api


class TestAssembleInOrder:
    """Test cases for re-ordering batch responses"""

    def test_follows_id_order_and_drops_unusable(self):
        """Test id order is restored and sentinel / missing geometry is dropped"""
        ids = ["c", "a", "z", "b", "s"]
        by_id = {
            "a": _geom(1.0, 1.0),
            "b": _geom(2.0, 2.0),
            "c": _geom(3.0, 3.0),
            "s": _geom(0.0, 0.0),  # sentinel for unknown position
        }
        out = assemble_in_order(ids, by_id)
        assert [i.id for i in out] == ["c", "a", "b"]
        assert out[0] == SequenceImage("c", 3.0, 3.0)


class TestSequenceCoordinateCache:
    """Test cases for SequenceCoordinateCache"""

    def test_resolve_and_cache(self):
        """Test the first resolve goes remote and the second is served from cache"""
        api = _api(ids=["2", "1"], by_id={"1": _geom(1.0, 1.0), "2": _geom(2.0, 2.0)})
        cache = SequenceCoordinateCache(api)

        async def run():
            first = await cache.resolve_sequence_images("seqA")
            second = await cache.resolve_sequence_images("seqA")
            return first, second

        first, second = asyncio.run(run())
        assert [i.id for i in first] == ["2", "1"]
        assert second == first
        assert "seqA" in cache
        api.fetch_sequence_image_ids.assert_awaited_once_with("seqA")
        api.fetch_images_by_ids.assert_awaited_once()
        assert api.fetch_images_by_ids.call_args[1]["fields"] == ("id", "geometry")

    def test_callers_get_copies(self):
        """Test mutating a returned list does not touch the cache"""
        api = _api(ids=["1"], by_id={"1": _geom(1.0, 1.0)})
        cache = SequenceCoordinateCache(api)
        imgs = asyncio.run(cache.resolve_sequence_images("seqA"))
        imgs.clear()
        assert len(cache.get("seqA")) == 1

    def test_concurrent_misses_share_one_lookup(self):
        """Test two simultaneous resolves of one sequence hit the API once"""
        async def run():
            release = asyncio.Event()

            async def slow_ids(seq):
                await release.wait()
                return ["1"]

            api = _api(by_id={"1": _geom(1.0, 1.0)})
            api.fetch_sequence_image_ids = AsyncMock(side_effect=slow_ids)
            cache = SequenceCoordinateCache(api)
            t1 = asyncio.ensure_future(cache.resolve_sequence_images("seqA"))
            t2 = asyncio.ensure_future(cache.resolve_sequence_images("seqA"))
            await asyncio.sleep(0)
            release.set()
            return await t1, await t2, api

        a, b, api = asyncio.run(run())
        assert a == b == [SequenceImage("1", 1.0, 1.0)]
        assert api.fetch_sequence_image_ids.await_count == 1

    def test_cancelled_first_caller_leaves_waiters_a_miss(self):
        """Test cancelling the resolving caller does not raise CancelledError in callers sharing its lookup"""
        async def run():
            async def never(seq):
                await asyncio.Event().wait()

            api = _api(by_id={"1": _geom(1.0, 1.0)})
            api.fetch_sequence_image_ids = AsyncMock(side_effect=never)
            cache = SequenceCoordinateCache(api)
            t1 = asyncio.ensure_future(cache.resolve_sequence_images("seqA"))
            await asyncio.sleep(0)
            t2 = asyncio.ensure_future(cache.resolve_sequence_images("seqA"))
            await asyncio.sleep(0)
            t1.cancel()
            await asyncio.gather(t1, return_exceptions=True)
            return await t2, cache

        shared, cache = asyncio.run(run())
        assert shared == []
        assert "seqA" not in cache

    def test_empty_result_is_not_cached(self):
        """Test an unresolvable sequence yields [] and is retried next time"""
        api = _api(ids=None)
        cache = SequenceCoordinateCache(api)
        assert asyncio.run(cache.resolve_sequence_images("seqA")) == []
        assert "seqA" not in cache
        asyncio.run(cache.resolve_sequence_images("seqA"))
        assert api.fetch_sequence_image_ids.await_count == 2

    def test_remote_exception(self):
        """Test API exceptions degrade to an empty list"""
        api = _api()
        api.fetch_sequence_image_ids = AsyncMock(side_effect=RuntimeError("boom"))
        cache = SequenceCoordinateCache(api)
        assert asyncio.run(cache.resolve_sequence_images("seqA")) == []

    def test_clear(self):
        """Test clear() evicts every entry"""
        cache = SequenceCoordinateCache(_api())
        cache.put("seqA", [SequenceImage("1", 1.0, 1.0)])
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0
        assert cache.get("seqA") is None


class TestSessionStore:
    """Test cases for SessionStore"""

    def test_save_and_restore(self, tmp_path):
        """Test the persisted entry restores the image list"""
        store = SessionStore(str(tmp_path / "runtime" / "session.json"))
        images = [SequenceImage("1", 1.5, 2.5), SequenceImage("2", 3.5, 4.5)]
        store.save("seqA", images)

        raw = json.loads((tmp_path / "runtime" / "session.json").read_text())
        assert raw["sequenceId"] == "seqA"
        assert store.restore() == images

    def test_restore_missing_or_corrupt(self, tmp_path):
        """Test absent and malformed files restore nothing"""
        path = tmp_path / "session.json"
        store = SessionStore(str(path))
        assert store.restore() == []
        path.write_text("{not json")
        assert store.restore() == []
        path.write_text(json.dumps({"sequenceId": "seqA", "sequenceImages": [{"id": "1"}]}))
        assert store.restore() == []

    def test_clear(self, tmp_path):
        """Test clear() removes the file and is safe to repeat"""
        path = tmp_path / "session.json"
        store = SessionStore(str(path))
        store.save("seqA", [SequenceImage("1", 1.0, 1.0)])
        store.clear()
        assert not path.exists()
        store.clear()
