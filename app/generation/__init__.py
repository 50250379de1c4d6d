"""Image generation orchestration layer.

Vendor-neutral core for producing AI images:
  - Request Validator (pure, fixed check order)
  - Vendor Adapters (Gemini, Fal, OpenAI, Stability, custom endpoints)
  - Timeout Guard (per-call deadline tokens)
  - Error Classifier (tagged error kinds, caller-safe messages)
  - Fast-Path Orchestrator (fan-out with partial success)
  - Batch Job Manager (deferred jobs, sequential background processing)
"""
