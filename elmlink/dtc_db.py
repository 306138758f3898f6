"""Diagnostic trouble code knowledge base.

A static registry of known codes. Lookups never raise: unknown codes are
reported as None and `unknown_info` builds the generic placeholder that the
session substitutes so a read never fails on an unrecognised code.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import DTCRecord, DTCStatus, Severity

_CODE_RE = re.compile(r'^[PCBU][0-3][0-9A-F]{3}$')

CATEGORY_BY_LETTER = {
    'P': 'Powertrain',
    'C': 'Chassis',
    'B': 'Body',
    'U': 'Network',
}


@dataclass(frozen=True)
class DTCInfo:
    description: str
    severity: Severity
    category: str
    causes: List[str] = field(default_factory=list)


_CODES: Dict[str, DTCInfo] = {
    'P0171': DTCInfo(
        'System too lean (Bank 1)', Severity.MEDIUM, 'Fuel/Air',
        ['Dirty air filter', 'Faulty MAF sensor', 'Intake vacuum leak', 'Weak fuel pump'],
    ),
    'P0301': DTCInfo(
        'Cylinder 1 misfire detected', Severity.HIGH, 'Ignition',
        ['Worn spark plug', 'Failing ignition coil', 'Damaged plug wire', 'Low cylinder compression'],
    ),
    'P0420': DTCInfo(
        'Catalyst system efficiency below threshold (Bank 1)', Severity.MEDIUM, 'Emissions',
        ['Damaged catalytic converter', 'Faulty oxygen sensor', 'Exhaust leak'],
    ),
    'P0128': DTCInfo(
        'Coolant thermostat below regulating temperature', Severity.LOW, 'Cooling',
        ['Thermostat stuck open', 'Faulty coolant temperature sensor', 'Low coolant level'],
    ),
}

# Additional generic SAE codes
_CODES.update({
    'P0101': DTCInfo(
        'Mass air flow circuit range/performance', Severity.MEDIUM, 'Air Intake',
        ['Dirty or failed MAF sensor', 'Air leak after MAF', 'Clogged air filter'],
    ),
    'P0113': DTCInfo(
        'Intake air temperature sensor circuit high', Severity.LOW, 'Air Intake',
        ['Disconnected IAT sensor', 'Open circuit in IAT wiring', 'Failed IAT sensor'],
    ),
    'P0133': DTCInfo(
        'O2 sensor circuit slow response (Bank 1 Sensor 1)', Severity.MEDIUM, 'Emissions',
        ['Aged oxygen sensor', 'Exhaust leak before sensor', 'Contaminated sensor'],
    ),
    'P0174': DTCInfo(
        'System too lean (Bank 2)', Severity.MEDIUM, 'Fuel/Air',
        ['Intake vacuum leak', 'Faulty MAF sensor', 'Clogged fuel injectors'],
    ),
    'P0300': DTCInfo(
        'Random/multiple cylinder misfire detected', Severity.HIGH, 'Ignition',
        ['Worn spark plugs', 'Vacuum leak', 'Low fuel pressure', 'Failing ignition coils'],
    ),
    'P0302': DTCInfo(
        'Cylinder 2 misfire detected', Severity.HIGH, 'Ignition',
        ['Worn spark plug', 'Failing ignition coil', 'Leaking injector'],
    ),
    'P0442': DTCInfo(
        'EVAP system small leak detected', Severity.LOW, 'EVAP',
        ['Loose fuel cap', 'Cracked EVAP hose', 'Faulty purge valve'],
    ),
    'P0455': DTCInfo(
        'EVAP system large leak detected', Severity.MEDIUM, 'EVAP',
        ['Missing fuel cap', 'Disconnected EVAP hose', 'Faulty vent valve'],
    ),
    'P0500': DTCInfo(
        'Vehicle speed sensor malfunction', Severity.MEDIUM, 'Transmission',
        ['Failed speed sensor', 'Damaged wiring', 'Faulty instrument cluster'],
    ),
    'P0505': DTCInfo(
        'Idle air control system malfunction', Severity.MEDIUM, 'Idle Control',
        ['Dirty throttle body', 'Failed IAC valve', 'Vacuum leak'],
    ),
    'C0035': DTCInfo(
        'Left front wheel speed sensor circuit', Severity.HIGH, 'ABS',
        ['Failed wheel speed sensor', 'Damaged sensor wiring', 'Debris on tone ring'],
    ),
    'U0100': DTCInfo(
        'Lost communication with ECM/PCM', Severity.HIGH, 'Network',
        ['CAN bus wiring fault', 'ECM power or ground loss', 'Failed ECM'],
    ),
})


def normalize_code(code: str) -> str:
    return (code or '').strip().upper()


def is_valid_code(code: str) -> bool:
    return bool(_CODE_RE.match(normalize_code(code)))


def lookup(code: str) -> Optional[DTCInfo]:
    return _CODES.get(normalize_code(code))


def unknown_info(code: str) -> DTCInfo:
    code = normalize_code(code)
    category = CATEGORY_BY_LETTER.get(code[:1], 'Unknown')
    return DTCInfo(
        'Unrecognized code - consult a specialist',
        Severity.MEDIUM,
        category,
        ['Manufacturer-specific or uncatalogued code'],
    )


def to_record(code: str, status: DTCStatus) -> DTCRecord:
    """Join a decoded code against the knowledge base."""
    code = normalize_code(code)
    info = lookup(code) or unknown_info(code)
    return DTCRecord(
        code=code,
        status=status,
        description=info.description,
        severity=info.severity,
        category=info.category,
        causes=list(info.causes),
    )


def list_codes() -> List[str]:
    return sorted(_CODES.keys())
