# Overview: Device runtime settings.

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceConfig:
    base_url: str
    device_id: str
    theater_id: int
    storage_dir: str = ".concessions-device"
    request_timeout: float = 10.0

    # Offline queue drainer
    drain_poll_seconds: float = 2.0
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    lease_seconds: float = 30.0

    # Non-order calls retry transient failures this many times
    max_transient_attempts: int = 3

    # Stock reservation view
    refresh_interval_seconds: float = 15.0

    # Broadcast consumer
    stream_fallback_after_seconds: float = 60.0
    fallback_poll_seconds: float = 30.0
    reconnect_base_seconds: float = 1.0
    reconnect_cap_seconds: float = 60.0

    def __post_init__(self):
        if not 1.0 <= self.drain_poll_seconds <= 5.0:
            raise ValueError("drain_poll_seconds must be between 1 and 5")
        if self.backoff_base_seconds <= 0 or self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff cap must be >= base > 0")

    @classmethod
    def from_env(cls) -> "DeviceConfig":
        return cls(
            base_url=os.environ.get("CONCESSIONS_API_URL", "http://127.0.0.1:5000/api"),
            device_id=os.environ.get("CONCESSIONS_DEVICE_ID", "device-1"),
            theater_id=int(os.environ.get("CONCESSIONS_THEATER_ID", "1")),
            storage_dir=os.environ.get("CONCESSIONS_STORAGE_DIR", ".concessions-device"),
            drain_poll_seconds=float(os.environ.get("CONCESSIONS_DRAIN_POLL_SECONDS", "2")),
        )
