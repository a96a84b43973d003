"""
LeafScan Backend — API Routes Package
=======================================

Route Inventory:
    - analyze.py: POST /analyze   (diagnose a plant photo)
    - health.py:  GET  /health    (service health check)

Routes stay thin: negotiate the request shape, call DiagnosisService,
let exceptions reach the global handlers.
"""
