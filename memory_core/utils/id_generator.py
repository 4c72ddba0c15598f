"""
Short prefixed ID generator for memory records.

Format: {prefix}_{base36_random}
- en_xxxxxxxx  - entity
- fa_xxxxxxxx  - fact
- rl_xxxxxxxx  - relationship edge
- in_xxxxxxxx  - inference
- op_xxxxxxxx  - memory operation (merge log)
- sn_xxxxxxxx  - sentiment reading
- mr_xxxxxxxx  - maintenance run

8 chars base36 = 36^8 = 2.8 trillion unique IDs per type
"""
import secrets
import re
from typing import Optional

# Base36 alphabet (lowercase letters + digits)
ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
BASE = len(ALPHABET)  # 36

PREFIXES = {
    'entity': 'en',
    'fact': 'fa',
    'relationship': 'rl',
    'inference': 'in',
    'operation': 'op',
    'sentiment': 'sn',
    'maintenance_run': 'mr',
}

PREFIX_TO_TYPE = {v: k for k, v in PREFIXES.items()}

ID_PATTERN = re.compile(
    r'^(' + '|'.join(PREFIXES.values()) + r')_[0-9a-z]{8}$'
)


def _random_base36(length: int = 8) -> str:
    """Generate random base36 string"""
    return ''.join(ALPHABET[secrets.randbelow(BASE)] for _ in range(length))


def generate_id(record_type: str) -> str:
    """
    Generate a new short ID for the given record type.

    Args:
        record_type: One of the keys of PREFIXES

    Returns:
        Short ID like 'en_x5b8r2yj'

    Raises:
        ValueError: If record_type is invalid
    """
    if record_type not in PREFIXES:
        raise ValueError(f"Invalid record type: {record_type}. "
                         f"Must be one of: {list(PREFIXES.keys())}")

    return f"{PREFIXES[record_type]}_{_random_base36(8)}"


def validate_id(id_str: str) -> bool:
    """Check if a string is a valid short ID."""
    if not id_str or not isinstance(id_str, str):
        return False
    return bool(ID_PATTERN.match(id_str))


def get_id_type(id_str: str) -> Optional[str]:
    """
    Extract the record type from an ID.

    Returns:
        Record type ('entity', 'fact', etc.) or None if invalid
    """
    if not validate_id(id_str):
        return None
    return PREFIX_TO_TYPE.get(id_str.split('_', 1)[0])


def generate_entity_id() -> str:
    """Generate a new entity ID"""
    return generate_id('entity')


def generate_fact_id() -> str:
    """Generate a new fact ID"""
    return generate_id('fact')


def generate_relationship_id() -> str:
    """Generate a new relationship edge ID"""
    return generate_id('relationship')


def generate_inference_id() -> str:
    """Generate a new inference ID"""
    return generate_id('inference')


def generate_operation_id() -> str:
    """Generate a new memory operation ID"""
    return generate_id('operation')


def generate_sentiment_id() -> str:
    return generate_id('sentiment')


def generate_run_id() -> str:
    return generate_id('maintenance_run')
