"""
Utility modules for memory_core
"""
from .id_generator import (
    generate_id,
    validate_id,
    get_id_type,
    generate_entity_id,
    generate_fact_id,
    generate_relationship_id,
    generate_inference_id,
    generate_operation_id,
)
from .datetime_utils import utc_now, to_utc

__all__ = [
    'generate_id',
    'validate_id',
    'get_id_type',
    'generate_entity_id',
    'generate_fact_id',
    'generate_relationship_id',
    'generate_inference_id',
    'generate_operation_id',
    'utc_now',
    'to_utc',
]
