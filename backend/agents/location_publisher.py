"""
Location Publisher — throttles a device's GPS fixes before they hit the channel.

GPS callbacks can fire several times a second; a fix is written only when
  (time gate)  at least MIN_INTERVAL_MS since the last accepted write, AND
  (distance)   moved at least MIN_DISTANCE_M, OR
  (heartbeat)  at least MAX_INTERVAL_MS since the last accepted write.

Writes are best-effort telemetry: failures are logged and dropped, and the
next fix retries naturally.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from config import Settings, settings as default_settings
from models.game import utcnow
from services.realtime import RealtimeChannel, location_path
from utils.geo import BoundingBox, LatLng, distance_meters, is_within_bounds

logger = logging.getLogger(__name__)


class LocationPublisher:

    def __init__(
        self,
        channel: RealtimeChannel,
        game_id: str,
        uid: str,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
        bounds: Optional[BoundingBox] = None,
    ):
        self._channel = channel
        self._game_id = game_id
        self._uid = uid
        self._clock = clock
        self._min_distance_m = settings.min_distance_m
        self._min_interval_ms = settings.min_interval_ms
        self._max_interval_ms = settings.max_interval_ms
        self.bounds = bounds or BoundingBox(
            settings.bounds_min_lat, settings.bounds_max_lat,
            settings.bounds_min_lng, settings.bounds_max_lng,
        )
        self.out_of_bounds = False
        self.last_write_at: Optional[datetime] = None
        self.last_write_point: Optional[LatLng] = None

    def should_publish(self, point: LatLng, now: datetime) -> bool:
        if self.last_write_at is None:
            return True
        since_ms = (now - self.last_write_at).total_seconds() * 1000
        if since_ms < self._min_interval_ms:
            return False
        if self.last_write_point is None:
            return True
        moved = distance_meters(self.last_write_point, point)
        return moved >= self._min_distance_m or since_ms >= self._max_interval_ms

    async def publish(self, lat: float, lng: float, accuracy_m: float = 0.0) -> bool:
        """Offer one GPS fix. Returns True when it was written. Never raises."""
        point = LatLng(lat, lng)

        # Flag only; out-of-bounds fixes are still published.
        outside = not is_within_bounds(point, self.bounds)
        if outside and not self.out_of_bounds:
            logger.warning(f"[{self._game_id}] {self._uid} left the play area at {lat:.5f},{lng:.5f}")
        self.out_of_bounds = outside

        now = self._clock()
        if not self.should_publish(point, now):
            logger.debug(f"[{self._game_id}] location fix for {self._uid} throttled")
            return False

        try:
            await self._channel.write(location_path(self._game_id, self._uid), {
                "lat": lat,
                "lng": lng,
                "accuracyM": accuracy_m,
                "at": self._channel.server_timestamp(),
            })
        except Exception:
            logger.warning(f"[{self._game_id}] location write for {self._uid} failed", exc_info=True)
            return False

        self.last_write_at = now
        self.last_write_point = point
        return True
