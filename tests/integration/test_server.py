"""
Integration tests for the HTTP service (FastAPI app over a stubbed Graph API)
"""

import pytest
import os
import sys
from unittest.mock import AsyncMock, Mock

from fastapi.testclient import TestClient

# Add the project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import load_config
from common.types import RawFeature, SequenceImage
from coverage_layers.filters import CoverageFilterPipeline
from coverage_layers.loaders import TurboCoverageLoader
from coverage_layers.session import CoverageKind
from graph_api.sequence_cache import SessionStore
from service.server import build_engine, create_app

BBOX = "-77.01,38.89,-77.0,38.9"


def _geom(lon, lat):
    return {"geometry": {"type": "Point", "coordinates": [lon, lat]}}


def _stub_api():
    api = Mock()
    api.fetch_images_in_bbox = AsyncMock(return_value=[
        {"id": "a1", "sequence": "seqA", "captured_at": 1_600_000_000_000, **_geom(-77.00002, 38.9)},
    ])
    api.fetch_sequence_image_ids = AsyncMock(side_effect=lambda seq: ["a0", "a1"] if seq == "seqA" else None)
    api.fetch_images_by_ids = AsyncMock(return_value={"a0": _geom(-77.0005, 38.9), "a1": _geom(-77.00002, 38.9)})
    api.fetch_image_sequence_id = AsyncMock(return_value="seqA")
    api.fetch_reverse_geocode = AsyncMock(return_value="Arlington")
    return api


def _turbo_loader(api):
    tiles = Mock()
    tiles.fetch_layer_features = AsyncMock(return_value=[RawFeature("a1", -77.00002, 38.9)])
    return TurboCoverageLoader(tiles, CoverageFilterPipeline(api))


@pytest.fixture
def engine(tmp_path):
    P = load_config(str(tmp_path / "missing.yaml"))
    api = _stub_api()
    return build_engine(
        P,
        api=api,
        loaders={CoverageKind.TURBO: _turbo_loader(api)},
        store=SessionStore(str(tmp_path / "session.json")),
    )


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


class TestServer:
    """Test cases for the coverage API"""

    def test_health(self, client):
        """Test the health endpoint reports layer states"""
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["layers"] == {"turbo": "inactive"}
        assert body["sequence_cache"]["entries"] == 0

    def test_coverage_zoom_gate(self, client, engine):
        """Test below the threshold nothing loads and a warning is returned"""
        r = client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 12})
        assert r.status_code == 200
        body = r.json()
        assert body["applied"] is False
        assert body["state"] == "active_waiting"
        assert body["warning"].startswith("Zoom in to level 16")
        assert body["features"] == []

    def test_coverage_loads(self, client):
        """Test a valid zoom loads features"""
        r = client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 17})
        body = r.json()
        assert body["applied"] is True
        assert body["state"] == "active_loaded"
        assert [f["id"] for f in body["features"]] == ["a1"]

    def test_coverage_off(self, client):
        """Test turning a layer off clears it"""
        client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 17})
        body = client.delete("/coverage/turbo").json()
        assert body["state"] == "inactive"
        assert body["features"] == []

    def test_coverage_bad_requests(self, client):
        """Test unknown kinds and malformed bboxes are rejected"""
        assert client.get("/coverage/roads", params={"bbox": BBOX, "zoom": 17}).status_code == 404
        assert client.get("/coverage/signs", params={"bbox": BBOX, "zoom": 17}).status_code == 404
        assert client.get("/coverage/turbo", params={"bbox": "1,2,3", "zoom": 17}).status_code == 422

    def test_click_opens_sequence(self, client, tmp_path):
        """Test a background click opens the nearest image and persists the sequence"""
        r = client.get("/click", params={"lon": -77.0, "lat": 38.9})
        body = r.json()
        assert body["action"] == "open"
        assert body["sequence_id"] == "seqA"
        assert body["image_id"] == "a1"
        assert [c["sequence_id"] for c in body["candidates"]] == ["seqA"]
        assert SessionStore(str(tmp_path / "session.json")).restore() == [
            SequenceImage("a0", -77.0005, 38.9),
            SequenceImage("a1", -77.00002, 38.9),
        ]

    def test_click_turbo_point(self, client, engine):
        """Test a coverage-point hit in turbo mode resolves its sequence"""
        client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 17})
        r = client.get("/click", params={"lon": -77.00002, "lat": 38.9, "hit": ["coverage_point:a1", "background"]})
        body = r.json()
        assert body["action"] == "open"
        assert body["sequence_id"] == "seqA"
        assert engine.sessions[CoverageKind.TURBO].feature("a1").sequence_id == "seqA"

    def test_candidates_carry_label_and_color(self, client):
        """Test picker entries include a label and a route colour"""
        body = client.get("/click", params={"lon": -77.0, "lat": 38.9}).json()
        cand = body["candidates"][0]
        assert cand["label"] == "seq... (1 nearby) - Sep 2020"
        assert cand["color"] == "#0000ff"

    def test_active_image_view(self, client):
        """Test viewer navigation and the active view cone"""
        assert client.get("/active/view").status_code == 404
        client.get("/click", params={"lon": -77.0, "lat": 38.9})

        r = client.post("/active/a0")
        assert r.json() == {"sequence_id": "seqA", "image_id": "a0"}
        assert client.post("/active/zz").status_code == 404

        body = client.get("/active/view", params={"step": 3, "width_deg": 0.004, "height_deg": 0.002, "position": "east"}).json()
        assert body["image"]["id"] == "a0"
        assert body["bearing"] == pytest.approx(90.0, abs=0.01)  # a0 -> a1 heads east
        assert body["cone"][0] == body["cone"][-1]
        assert body["center"] == pytest.approx([-77.0005 - 0.001, 38.9])
        assert client.get("/active/view", params={"position": "up"}).status_code == 422

    def test_coverage_filters_change_at_runtime(self, client, engine):
        """Test replacing the filters reloads the loaded view with them"""
        client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 17})

        body = client.put("/coverage/turbo/filters", json={"creator": "alice"}).json()
        assert body["applied"] is True
        assert body["filters"]["creator"] == "alice"
        assert body["features"] == []  # no detail record carries alice
        engine.api.fetch_images_by_ids.assert_awaited()

        body = client.put("/coverage/turbo/filters", json={}).json()
        assert [f["id"] for f in body["features"]] == ["a1"]
        assert body["filters"]["creator"] == ""

    def test_coverage_filters_rejected(self, client):
        """Test malformed dates and unconfigured kinds are refused"""
        r = client.put("/coverage/turbo/filters", json={"start_date": "2020/01/01"})
        assert r.status_code == 422
        assert client.put("/coverage/signs/filters", json={}).status_code == 404

    def test_coverage_filters_while_off(self, client):
        """Test filters set before the layer is on are used by the next load"""
        body = client.put("/coverage/turbo/filters", json={"creator": "alice"}).json()
        assert body["applied"] is False
        assert client.get("/coverage/turbo", params={"bbox": BBOX, "zoom": 17}).json()["features"] == []

    def test_click_bad_hit(self, client):
        """Test an unknown hit kind is rejected"""
        assert client.get("/click", params={"lon": -77.0, "lat": 38.9, "hit": "road"}).status_code == 422

    def test_sequence_images(self, client):
        """Test ordered sequence coordinates and 404 for unknown sequences"""
        r = client.get("/sequences/seqA/images")
        assert r.status_code == 200
        assert [i["id"] for i in r.json()["images"]] == ["a0", "a1"]
        assert client.get("/sequences/nope/images").status_code == 404

    def test_clear_cache(self, client, engine):
        """Test DELETE /cache empties the sequence cache"""
        client.get("/sequences/seqA/images")
        assert len(engine.cache) == 1
        assert client.delete("/cache").json() == {"cleared": 1}
        assert len(engine.cache) == 0

    def test_geocode(self, client):
        """Test the reverse geocode passthrough"""
        assert client.get("/geocode", params={"lat": 38.9, "lon": -77.0}).json()["address"] == "Arlington"


class TestBuildEngine:
    """Test cases for engine wiring"""

    def test_requires_token(self, tmp_path, monkeypatch):
        """Test building real clients without a token fails loudly"""
        monkeypatch.delenv("MAPILLARY_ACCESS_TOKEN", raising=False)
        with pytest.raises(ValueError, match="access token is required"):
            build_engine(load_config(str(tmp_path / "missing.yaml")))

    def test_builds_all_kinds_from_config(self, tmp_path):
        """Test the default config yields one scheduler per coverage kind"""
        P = load_config(str(tmp_path / "missing.yaml"))
        P["mapillary"]["access_token"] = "tok"
        P["session"]["cache_path"] = str(tmp_path / "session.json")
        engine = build_engine(P)
        assert set(engine.schedulers) == set(CoverageKind)
        assert engine.dispatcher.turbo is engine.sessions[CoverageKind.TURBO]


class TestSessionRestore:
    """Test cases for the route persisted by a previous session"""

    def test_restored_route_is_drawn_but_unselected(self, engine):
        """Test the saved images come back as route markers with no active sequence"""
        engine.store.save("seqA", [SequenceImage("a0", -77.0005, 38.9), SequenceImage("a1", -77.00002, 38.9)])
        client = TestClient(create_app(engine))

        body = client.get("/session").json()
        assert body["sequence_id"] is None
        assert body["image_id"] is None
        assert [i["id"] for i in body["images"]] == ["a0", "a1"]
        assert client.get("/health").json()["restored_images"] == 2

        assert client.post("/active/a0").status_code == 404
        assert client.get("/active/view").status_code == 404

    def test_click_replaces_restored_route(self, engine):
        """Test opening a sequence replaces the restored markers"""
        engine.store.save("old", [SequenceImage("x1", 10.0, 10.0)])
        client = TestClient(create_app(engine))
        client.get("/click", params={"lon": -77.0, "lat": 38.9})

        body = client.get("/session").json()
        assert body["sequence_id"] == "seqA"
        assert body["image_id"] == "a1"
        assert [i["id"] for i in body["images"]] == ["a0", "a1"]

    def test_nothing_to_restore(self, client):
        """Test a fresh store yields an empty route"""
        assert client.get("/session").json() == {"sequence_id": None, "image_id": None, "images": []}
