"""
Context retrieval.

Chunking, dependency linking, vector and direct search. The router and
assembler depend on review policy and are imported from their modules.
"""

from .models import (
    CodeUnit,
    ContextBundle,
    RetrievalMethod,
    RetrievalResult,
    ScoredUnit,
    UnitKind,
)
from .tokenizer import Tokenizer
from .chunker import Chunker
from .linker import DependencyLinker
from .direct import DirectSearch, DirectSearchOptions
from .semantic import SemanticSearch

__all__ = [
    "CodeUnit",
    "ContextBundle",
    "RetrievalMethod",
    "RetrievalResult",
    "ScoredUnit",
    "UnitKind",
    "Tokenizer",
    "Chunker",
    "DependencyLinker",
    "DirectSearch",
    "DirectSearchOptions",
    "SemanticSearch",
]
