"""Dedupe-aware validation and upsert of measurement batches."""
from datetime import date
from typing import Dict, Iterable, Set, Tuple

from airhealth.exceptions import InvalidDataError
from airhealth.logging_config import get_logger
from airhealth.models import Measurement
from airhealth.storage.base import MeasurementStore


class MeasurementStoreGateway:
    """Validates batches and writes them through a MeasurementStore."""

    def __init__(self, store: MeasurementStore):
        self.store = store
        self.logger = get_logger("storage.gateway")

    def upsert_batch(self, measurements: Iterable[Measurement]) -> Dict[str, int]:
        """
        Validate, dedupe and upsert a batch of measurements.

        Records without pm25, pm10 or an overall index are dropped. Within
        the batch the last record for a (city, date) key wins, and the store
        overwrites any existing row for that key.

        Args:
            measurements: Measurements to store

        Returns:
            {"inserted": rows written, "rejected": records dropped}

        Raises:
            InvalidDataError: No record in the batch is valid
            StoreError: The store rejected the batch
        """
        batch = list(measurements)
        deduped: Dict[Tuple[str, date], Measurement] = {}
        rejected = 0

        for measurement in batch:
            if not measurement.is_reportable():
                rejected += 1
                self.logger.warning(
                    f"Dropping {measurement.city} reading at {measurement.observed_at}: no usable pollutant"
                )
                continue
            deduped[measurement.key] = measurement

        if not deduped:
            raise InvalidDataError(
                "No valid measurements in batch",
                details={"received": len(batch), "rejected": rejected}
            )

        inserted = self.store.upsert_measurements(deduped.values())
        return {"inserted": inserted, "rejected": rejected}

    def existing_dates(self, city: str) -> Set[date]:
        """Dates already stored for a city."""
        return self.store.existing_dates(city)
