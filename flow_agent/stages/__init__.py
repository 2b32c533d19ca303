"""
Text-level stages: the dialect codec, JSON recovery and rich-content helpers.
"""

from flow_agent.stages.codec import parse, parse_document, serialize_document, serialize_rows
from flow_agent.stages.json_recovery import JSONRecovery, recover_json

__all__ = [
    "JSONRecovery",
    "parse",
    "parse_document",
    "recover_json",
    "serialize_document",
    "serialize_rows",
]
