"""Store interfaces the engine depends on."""
from datetime import date, datetime
from typing import Iterable, List, Protocol, Set

from airhealth.models import AlgorithmDefinition, Measurement


class MeasurementStore(Protocol):
    """Relational table of measurements keyed by (city, date)."""

    def upsert_measurements(self, measurements: Iterable[Measurement]) -> int:
        ...

    def existing_dates(self, city: str) -> Set[date]:
        ...

    def measurements_between(self, city: str, start: datetime, end: datetime) -> List[Measurement]:
        ...

    def latest_measurement(self, city: str) -> "Measurement | None":
        ...


class AlgorithmStore(Protocol):
    """Table of algorithm definitions keyed by code."""

    def load_algorithms(self) -> List[AlgorithmDefinition]:
        ...
