"""
Composite StreamRegistry assembled from smaller mixins.

The registry is the only owner of the active-stream map. Everything that
reads or changes it (start, stop, exit notifications, health checks and
schedule conflict resolution) holds ``registry.lock``.
"""

from .registry_state import RegistryState
from .logging_mixin import LoggingMixin
from .durations_mixin import DurationsMixin
from .lifecycle_mixin import LifecycleMixin
from .health_mixin import HealthMixin
from .control_mixin import ControlMixin


class StreamRegistry(
    RegistryState,
    LoggingMixin,
    DurationsMixin,
    LifecycleMixin,
    HealthMixin,
    ControlMixin,
):
    """Supervises one ffmpeg per (video, platform) pair."""

    log_prefix = "[streams] "
