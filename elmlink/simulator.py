"""Simulation fallback used whenever no adapter session is ready.

Values have the same shape as real reads and differ only by their
`source=simulated` tag. Pass a seeded `random.Random` for reproducible output.
"""
import random
from typing import List, Optional

from . import dtc_db
from .models import AdapterInfo, DataSource, DTCRecord, DTCReport, DTCStatus, LiveTelemetrySample

SIMULATED_CODES = ('P0171', 'P0301')
SIMULATED_VIN = 'DEMO1234567890VIN'


class SimulationFallback:
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def _jitter(self, base: int, spread: int) -> float:
        # base + uniform integer in [0, spread)
        return float(base + self.rng.randrange(spread))

    def dtc_records(self) -> List[DTCRecord]:
        return [dtc_db.to_record(code, DTCStatus.ACTIVE) for code in SIMULATED_CODES]

    def dtc_report(self) -> DTCReport:
        return DTCReport(dtcs=self.dtc_records(), source=DataSource.SIMULATED)

    def live_sample(self) -> LiveTelemetrySample:
        return LiveTelemetrySample(
            rpm=self._jitter(1850, 100),
            speed_kmh=self._jitter(65, 10),
            coolant_temp_c=self._jitter(89, 5),
            fuel_level_pct=self._jitter(75, 5),
            throttle_pct=self._jitter(15, 10),
            intake_temp_c=self._jitter(25, 5),
            source=DataSource.SIMULATED,
        )

    def vin(self) -> str:
        return SIMULATED_VIN

    def adapter_info(self) -> AdapterInfo:
        return AdapterInfo(version='Demo Mode', voltage=12.4, protocol='Simulated', source=DataSource.SIMULATED)
