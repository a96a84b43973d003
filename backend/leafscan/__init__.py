"""
LeafScan Backend — Application Package Initializer
====================================================

What: Plant disease diagnosis service: one photo in, one validated,
      organic-only diagnosis out.

Architecture Note:
    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns, content negotiation
    ├─────────────────────────────────────┤
    │         Services (Pipeline)         │  ← tracker, image, Gemini, parser, policy
    ├─────────────────────────────────────┤
    │          Schemas (Contracts)        │  ← DiagnosisResult + API models
    └─────────────────────────────────────┘

    Nothing is persisted. The only state that outlives a request is the
    usage tracker's per-client counters.
"""

__version__ = "1.0.0"
