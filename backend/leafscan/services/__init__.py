"""
LeafScan Backend — Services Layer
===================================

Service Inventory (pipeline order):
    - UsageTracker:     per-client fixed window rate limiting
    - ImageService:     size checks and Pillow normalization
    - build_prompt:     fixed diagnosis instruction + image
    - InferenceClient:  abstract model interface; GeminiService implements it
    - result_parser:    JSON extraction and schema validation
    - PolicyFilter:     organic-only treatment enforcement
    - DiagnosisService: sequences all of the above
"""
