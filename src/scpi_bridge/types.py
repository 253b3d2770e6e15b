"""Type definitions for SCPI Bridge."""

from typing import Any, Callable, Dict, Mapping, Union

# Measurement value: parsed number, or the raw reply when it is not numeric
MeasurementValue = Union[float, str]

# Loose speed-test options as received from a caller (CLI args, JSON body)
SpeedTestOptions = Mapping[str, Any]

# JSON-ready dictionary produced by the ``to_dict`` helpers
ResultDict = Dict[str, Any]

# Time sources injected into the speed-test harness
Clock = Callable[[], float]   # monotonic seconds
Sleeper = Callable[[float], None]
