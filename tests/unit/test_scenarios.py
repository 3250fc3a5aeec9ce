"""Unit tests for scenario stops and stop discovery."""

import pytest

from conftest import FakeStoreClient
from geophoto.models import FolderListing
from geophoto.scanner import BoundedRecursiveScanner
from geophoto.scenarios import Scenario, ScenarioStop, discover_stops
from geophoto.storage import ObjectStoreResolver


BUCKET = "demo.appspot.com"


@pytest.fixture
def scenario():
    return Scenario.from_record("house-fire", {
        "title": "House fire",
        "photos": [
            {"id": 1, "title": "Front", "imageURL": "https://cdn.example.com/front.jpg",
             "lat": 51.5, "lng": -0.12, "radiusMeters": 30},
            {"id": "2", "title": "Rear", "gsUri": "gs://demo.appspot.com/s/rear.jpg", "thumbURL": "https://cdn.example.com/t.jpg"},
            {"id": "3", "title": "Broken"},
        ],
    })


class TestScenarioStop:
    """Test coercion of stop records."""

    def test_legacy_fields(self):
        stop = ScenarioStop.model_validate({
            "id": 7,
            "storagePath": "s/a.jpg",
            "imageURL": "https://cdn.example.com/a.jpg",
            "thumbURL": "https://cdn.example.com/a-thumb.jpg",
            "at": 1700000000,
        })

        assert stop.id == "7"
        assert stop.image == "s/a.jpg"
        assert stop.thumbnail == "https://cdn.example.com/a-thumb.jpg"
        assert stop.created_at == 1700000000

    def test_inline_image_data(self):
        stop = ScenarioStop.model_validate({"imageData": {"data": "AAAA", "format": "png"}})

        assert stop.image == "data:image/png;base64,AAAA"
        assert stop.id.startswith("stop-")

    def test_missing_image_is_rejected(self):
        with pytest.raises(ValueError):
            ScenarioStop.model_validate({"title": "no image"})

    def test_primary_reference(self):
        stop = ScenarioStop(image="/s/a.jpg")

        reference = stop.primary_reference("demo.firebasestorage.app")

        assert reference.bucket_host == BUCKET
        assert reference.path == "s/a.jpg"


class TestScenario:
    """Test stop list editing."""

    def test_from_record_keeps_legacy_key_and_skips_invalid(self, scenario):
        assert scenario.id == "house-fire"
        assert scenario.stops_key == "photos"
        assert [stop.id for stop in scenario.stops] == ["1", "2"]
        assert scenario.stops[1].image == "gs://demo.appspot.com/s/rear.jpg"

    def test_to_record_round_trip(self, scenario):
        record = scenario.to_record()

        assert list(record) == ["id", "title", "photos"]
        assert record["photos"][0]["radiusMeters"] == 30
        assert "caption" not in record["photos"][0]
        assert Scenario.from_record("house-fire", record).stops == scenario.stops

    def test_add_update_remove(self, scenario):
        scenario.add_stop(ScenarioStop(id="0", title="Approach", image="https://cdn.example.com/0.jpg"), position=0)
        updated = scenario.update_stop("2", caption="Rear door", id="ignored")
        removed = scenario.remove_stop("1")

        assert [stop.id for stop in scenario.stops] == ["0", "2"]
        assert updated.id == "2"
        assert scenario.get_stop("2").caption == "Rear door"
        assert removed.title == "Front"

    def test_unknown_stop(self, scenario):
        with pytest.raises(KeyError):
            scenario.get_stop("missing")

    def test_add_result_as_new_stop(self, scenario):
        stop = scenario.add_result_as_new_stop("https://cdn.example.com/ai.png", based_on="1")

        assert scenario.stops[-1] is stop
        assert stop.title == "Front (AI)"
        assert stop.caption == "AI composite"
        assert stop.image == stop.thumbnail == "https://cdn.example.com/ai.png"
        assert (stop.lat, stop.lng) == (51.5, -0.12)
        assert stop.radius_meters == 30
        assert stop.origin == "ai"
        assert stop.based_on == "1"
        assert stop.created_at is not None

    def test_new_stop_default_radius(self, scenario):
        stop = scenario.add_result_as_new_stop("https://cdn.example.com/ai.png", based_on="2")

        assert stop.radius_meters == 50
        assert stop.lat is None


class TestDiscoverStops:
    """Test building stops from a store folder."""

    @pytest.mark.asyncio
    async def test_discovers_in_natural_order(self, fast_retry):
        native = FakeStoreClient({
            "scenarios/s1/image10.jpg": b"",
            "scenarios/s1/image2.jpg": b"",
            "scenarios/s1/front_door-1.png": b"",
            "scenarios/s1/thumbs/image2.jpg": b"",
            "scenarios/s1/notes.txt": b"",
        })
        native.tokens["scenarios/s1/image2.jpg"] = "t2"
        resolver = ObjectStoreResolver(
            native,
            FakeStoreClient(provider_name="rest"),
            default_bucket_host=BUCKET,
            retry_policy=fast_retry,
        )

        stops = await discover_stops(resolver, "scenarios/s1")

        assert [stop.id for stop in stops] == ["stop-1", "stop-2", "stop-3"]
        assert [stop.title for stop in stops] == ["front door 1", "image2", "image10"]
        assert stops[1].image.endswith("/o/scenarios%2Fs1%2Fimage2.jpg?alt=media&token=t2")
        assert all(stop.thumbnail is None for stop in stops)

    @pytest.mark.asyncio
    async def test_unresolvable_files_are_dropped(self):
        class PartialResolver:
            async def list_folder(self, path, bucket_host=None):
                return FolderListing(files=["s/a.jpg", "s/b.jpg"])

            async def download_url(self, path):
                if path == "s/a.jpg":
                    raise RuntimeError("gone")
                return f"https://cdn.example.com/{path}"

        resolver = PartialResolver()

        stops = await discover_stops(resolver, "s", scanner=BoundedRecursiveScanner(resolver, max_depth=0))

        assert [(stop.id, stop.image) for stop in stops] == [("stop-1", "https://cdn.example.com/s/b.jpg")]
