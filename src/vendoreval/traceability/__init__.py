"""Requirement x vendor traceability."""

from vendoreval.traceability.linker import TraceabilityLinker, TraceIndex, classify_rag

__all__ = ["TraceIndex", "TraceabilityLinker", "classify_rag"]
