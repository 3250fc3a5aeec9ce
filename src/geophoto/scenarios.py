"""Scenario stops: coercion of legacy stop records and discovery from the object store."""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from geophoto.error_handling import InvalidReference
from geophoto.materializer import ConcurrentURLMaterializer
from geophoto.models import ImageReference
from geophoto.references import STOP_REFERENCE_FIELDS, parse_reference, record_locator
from geophoto.scanner import BoundedRecursiveScanner, sort_paths


logger = logging.getLogger(__name__)


STOP_LIST_KEYS = ("stops", "photos", "images")
DEFAULT_RADIUS_METERS = 50.0


def _new_stop_id() -> str:
    return f"stop-{uuid.uuid4().hex[:8]}"


def _title_from_path(path: str) -> str:
    name = path.rstrip("/").rsplit("/", 1)[-1]
    stem = name.rsplit(".", 1)[0] if "." in name else name
    return stem.replace("_", " ").replace("-", " ").strip() or name


class ScenarioStop(BaseModel):
    """One photo or slide in a scenario."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=_new_stop_id)
    title: str = ""
    image: str = Field(min_length=1, description="Image locator (URL, data URI, store path)")
    thumbnail: Optional[str] = None
    overlays: List[Dict[str, Any]] = Field(default_factory=list)
    caption: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_meters: Optional[float] = Field(default=None, alias="radiusMeters")
    origin: Optional[str] = None
    based_on: Optional[str] = Field(default=None, alias="basedOn")
    created_at: Optional[float] = Field(default=None, alias="at")

    @model_validator(mode='before')
    @classmethod
    def coerce_legacy_record(cls, data: Any) -> Any:
        """Accept stop records that keep their image under any historical field."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("image") or not isinstance(data.get("image"), str):
            if any(data.get(key) for key in STOP_REFERENCE_FIELDS):
                data["image"] = record_locator(data)
        if not data.get("thumbnail") and data.get("thumbURL"):
            data["thumbnail"] = data["thumbURL"]
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        if data.get("basedOn") is not None:
            data["basedOn"] = str(data["basedOn"])
        return data

    def primary_reference(self, current_bucket_host: Optional[str] = None) -> ImageReference:
        """The highest-confidence reference for this stop's image."""
        return parse_reference(self.image, current_bucket_host)


class Scenario(BaseModel):
    """A scenario and its ordered stops.

    Stored records keep their stops under ``stops``, ``photos`` or ``images``;
    the key found on load is the key written back by :meth:`to_record`.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    stops: List[ScenarioStop] = Field(default_factory=list)
    stops_key: str = "stops"

    @classmethod
    def from_record(cls, scenario_id: str, record: Dict[str, Any]) -> "Scenario":
        stops_key = next((key for key in STOP_LIST_KEYS if isinstance(record.get(key), list)), "stops")
        stops: List[ScenarioStop] = []
        for index, raw in enumerate(record.get(stops_key) or []):
            try:
                stops.append(ScenarioStop.model_validate(raw))
            except (InvalidReference, ValueError) as e:
                logger.warning(f"Skipping stop {index} of scenario {scenario_id}: {e}")
        return cls(
            id=str(record.get("id") or scenario_id),
            title=str(record.get("title") or record.get("name") or ""),
            stops=stops,
            stops_key=stops_key,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            self.stops_key: [stop.model_dump(by_alias=True, exclude_none=True) for stop in self.stops],
        }

    def _index_of(self, stop_id: str) -> int:
        for index, stop in enumerate(self.stops):
            if stop.id == stop_id:
                return index
        raise KeyError(f"Scenario {self.id} has no stop {stop_id!r}")

    def get_stop(self, stop_id: str) -> ScenarioStop:
        return self.stops[self._index_of(stop_id)]

    def add_stop(self, stop: ScenarioStop, position: Optional[int] = None) -> ScenarioStop:
        if position is None:
            self.stops.append(stop)
        else:
            self.stops.insert(position, stop)
        return stop

    def update_stop(self, stop_id: str, **changes: Any) -> ScenarioStop:
        index = self._index_of(stop_id)
        data = self.stops[index].model_dump()
        data.update(changes)
        data["id"] = stop_id
        updated = ScenarioStop.model_validate(data)
        self.stops[index] = updated
        return updated

    def remove_stop(self, stop_id: str) -> ScenarioStop:
        return self.stops.pop(self._index_of(stop_id))

    def add_result_as_new_stop(self, url: str, based_on: str) -> ScenarioStop:
        """Append a generated image as a new stop modelled on an existing one."""
        base = self.get_stop(based_on)
        stop = ScenarioStop(
            title=f"{base.title} (AI)",
            caption="AI composite",
            image=url,
            thumbnail=url,
            lat=base.lat,
            lng=base.lng,
            radius_meters=base.radius_meters if base.radius_meters is not None else DEFAULT_RADIUS_METERS,
            origin="ai",
            based_on=base.id,
            created_at=time.time(),
        )
        return self.add_stop(stop)


async def discover_stops(
    resolver,
    root: str,
    *,
    scanner: Optional[BoundedRecursiveScanner] = None,
    pool_size: int = 6,
    progress: Optional[Callable[[int, int], Any]] = None,
) -> List[ScenarioStop]:
    """Scan a store folder and build one stop per resolvable image, in natural order."""
    scanner = scanner or BoundedRecursiveScanner(resolver)
    paths = sort_paths(await scanner.scan(root))
    materializer = ConcurrentURLMaterializer(resolver, pool_size=pool_size, progress=progress)
    pairs = await materializer.resolved_pairs(paths)
    logger.info(f"Discovered {len(pairs)} stop(s) under {root or '/'} from {len(paths)} file(s)")
    return [
        ScenarioStop(id=f"stop-{index + 1}", title=_title_from_path(path), image=url)
        for index, (path, url) in enumerate(pairs)
    ]
