"""
Unit tests for vector-tile fetch, decode and de-duplication
"""

import asyncio
import pytest
import os
import sys
from unittest.mock import Mock, patch

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import RawFeature, TileIndex
from tiles.decode import decode_layer, fold_features
from tiles.fetch import VectorTileClient
from tiles.mapper import tile_bounds

TILE = TileIndex(x=4685, y=6265, z=14)
URL = "https://tiles.example.com/{z}/{x}/{y}"


def _point(fid, px, py, **props):
    return {"id": fid, "properties": dict(props), "geometry": {"type": "Point", "coordinates": [px, py]}}


def _ok_response(content=b"pbf"):
    r = Mock()
    r.status_code = 200
    r.content = content
    return r


class TestDecodeLayer:
    """Test cases for decode_layer"""

    def test_point_is_reprojected_into_tile(self):
        """Test a tile-centre point decodes to lon/lat inside the tile bounds"""
        decoded = {"image": {"extent": 4096, "features": [_point(1, 2048, 2048, id="img1")]}}
        with patch("tiles.decode.mapbox_vector_tile.decode", return_value=decoded):
            feats = decode_layer(b"pbf", "image", TILE)

        assert len(feats) == 1
        f = feats[0]
        assert f.id == "img1"
        w, s, e, n = tile_bounds(TILE)
        assert w < f.lon < e
        assert s < f.lat < n
        assert f.x != 0.0 and f.y != 0.0

    def test_property_id_wins_over_feature_id(self):
        """Test the `id` property is used when present, feature id otherwise"""
        decoded = {"image": {"features": [_point(7, 0, 0, id=123), _point(8, 10, 10)]}}
        with patch("tiles.decode.mapbox_vector_tile.decode", return_value=decoded):
            feats = decode_layer(b"pbf", "image", TILE)
        assert [f.id for f in feats] == ["123", "8"]

    def test_multipoint_uses_first_point_and_lines_are_skipped(self):
        """Test MultiPoint yields one feature and non-point geometry is ignored"""
        decoded = {
            "point": {
                "features": [
                    {"id": 1, "properties": {}, "geometry": {"type": "MultiPoint", "coordinates": [[1, 2], [3, 4]]}},
                    {"id": 2, "properties": {}, "geometry": {"type": "LineString", "coordinates": [[1, 2], [3, 4]]}},
                ]
            }
        }
        with patch("tiles.decode.mapbox_vector_tile.decode", return_value=decoded):
            feats = decode_layer(b"pbf", "point", TILE)
        assert [f.id for f in feats] == ["1"]

    def test_missing_layer(self):
        """Test a tile without the requested layer yields nothing"""
        with patch("tiles.decode.mapbox_vector_tile.decode", return_value={"sequence": {"features": []}}):
            assert decode_layer(b"pbf", "image", TILE) == []

    def test_undecodable_payload(self):
        """Test decoder errors are swallowed as an empty tile"""
        with patch("tiles.decode.mapbox_vector_tile.decode", side_effect=ValueError("bad pbf")):
            assert decode_layer(b"garbage", "image", TILE) == []


class TestFoldFeatures:
    """Test cases for cross-tile merge"""

    def test_first_seen_wins(self):
        """Test the same id from two tiles is kept once with the first tile's coordinates"""
        a = [RawFeature("img1", -77.0, 38.9)]
        b = [RawFeature("img1", -77.0000001, 38.9000001), RawFeature("img2", -77.001, 38.9)]
        out = fold_features([a, b])
        assert [f.id for f in out] == ["img1", "img2"]
        assert out[0].lon == -77.0
        assert out[0].lat == 38.9

    def test_bbox_filter(self):
        """Test features outside the query bbox are dropped"""
        feats = [RawFeature("in", -77.0, 38.9), RawFeature("out", -76.0, 38.9)]
        out = fold_features([feats], bbox=(-77.1, 38.8, -76.9, 39.0))
        assert [f.id for f in out] == ["in"]


class TestVectorTileClient:
    """Test cases for VectorTileClient"""

    def test_init_no_api_key(self):
        """Test initialization without a token raises"""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="access token is required"):
                VectorTileClient(URL)

    def test_init_with_env_var(self):
        """Test the token falls back to the environment"""
        with patch.dict(os.environ, {"MAPILLARY_ACCESS_TOKEN": "env_token"}):
            assert VectorTileClient(URL).api_key == "env_token"

    def test_template_must_have_placeholders(self):
        """Test a URL template without {z}/{x}/{y} is rejected"""
        with pytest.raises(ValueError):
            VectorTileClient("https://tiles.example.com/{z}/{x}", api_key="k")

    def test_build_url(self):
        """Test the tile URL carries z/x/y and the access token"""
        client = VectorTileClient(URL, api_key="k")
        assert client.build_url(TILE) == "https://tiles.example.com/14/4685/6265?access_token=k"

    def test_get_tile_non_200(self):
        """Test a failed tile request yields None"""
        session = Mock()
        session.get.return_value = Mock(status_code=404, content=b"")
        client = VectorTileClient(URL, api_key="k", session=session)
        assert client.get_tile(TILE) is None

    def test_get_tile_network_error(self):
        """Test a transport exception yields None"""
        session = Mock()
        session.get.side_effect = ConnectionError("down")
        client = VectorTileClient(URL, api_key="k", session=session)
        assert client.get_tile(TILE) is None

    def test_overlapping_tiles_emit_one_feature(self):
        """Test two tiles reporting the same id at slightly different positions yield one feature"""
        session = Mock()
        session.get.return_value = _ok_response()
        client = VectorTileClient(URL, api_key="k", session=session)
        tiles = [TILE, TileIndex(TILE.x + 1, TILE.y, 14)]

        # left tile: img1 on its east edge; right tile: img1 on its west edge
        per_tile = iter([
            {"image": {"features": [_point(1, 4096, 2048, id="img1")]}},
            {"image": {"features": [_point(1, 0, 2049, id="img1"), _point(2, 100, 100, id="img2")]}},
        ])
        with patch("tiles.decode.mapbox_vector_tile.decode", side_effect=lambda *a, **k: next(per_tile)):
            feats = asyncio.run(client.fetch_layer_features(tiles, "image"))

        ids = [f.id for f in feats]
        assert ids.count("img1") == 1
        assert set(ids) == {"img1", "img2"}
        w, s, e, n = tile_bounds(TILE)
        assert feats[0].lon == pytest.approx(e, abs=1e-9)

    def test_all_tiles_failing_is_empty(self):
        """Test a query whose tiles all fail yields an empty list"""
        session = Mock()
        session.get.return_value = Mock(status_code=500, content=b"")
        client = VectorTileClient(URL, api_key="k", session=session)
        assert asyncio.run(client.fetch_layer_features([TILE], "image")) == []

    def test_cancelled_token_short_circuits(self):
        """Test a cancelled token skips decoding"""
        session = Mock()
        session.get.return_value = _ok_response()
        client = VectorTileClient(URL, api_key="k", session=session)
        token = Mock(cancelled=True)
        with patch("tiles.decode.mapbox_vector_tile.decode") as dec:
            assert asyncio.run(client.fetch_layer_features([TILE], "image", token=token)) == []
            dec.assert_not_called()
