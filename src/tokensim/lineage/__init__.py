"""Token lineage: graph reconstruction, genealogy, error handling and lazy loading."""

from tokensim.lineage.errors import LineageErrorHandler, format_error_message, format_technical_details
from tokensim.lineage.genealogy import TokenGenealogyEngine
from tokensim.lineage.graph import TokenGraph
from tokensim.lineage.lazy import (
    LazyLineageLoader,
    LazyLineageNode,
    ProgressiveDisclosureManager,
    VirtualScrollHelper,
)
from tokensim.lineage.tracer import SimpleTokenTracer, TokenTrace

__all__ = [
    "LazyLineageLoader",
    "LazyLineageNode",
    "LineageErrorHandler",
    "ProgressiveDisclosureManager",
    "SimpleTokenTracer",
    "TokenGenealogyEngine",
    "TokenGraph",
    "TokenTrace",
    "VirtualScrollHelper",
    "format_error_message",
    "format_technical_details",
]
