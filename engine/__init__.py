"""
Conversation engine - dispatcher, identification funnel, extraction and dates.
"""
from .dates import (
    ParsedDateTime,
    format_human_date,
    merge_time,
    parse_date_time,
)
from .extract import (
    Extracted,
    Field,
    FieldExtractor,
    OffTopic,
    Unavailable,
)
from .identification import IdentificationFunnel, SearchOutcome
from .planner import StepDispatcher

__all__ = [
    "ParsedDateTime",
    "format_human_date",
    "merge_time",
    "parse_date_time",
    "Extracted",
    "Field",
    "FieldExtractor",
    "OffTopic",
    "Unavailable",
    "IdentificationFunnel",
    "SearchOutcome",
    "StepDispatcher",
]
