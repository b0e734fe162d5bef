# Services package init
"""
SIHA Backend — Services Layer
===============================

What:  Business logic between routes (HTTP) and persistence.
How:   Stateless services, each exposed as a module-level singleton.

Service Inventory:
    - FrameEncoder:       Re-encodes one frame against a compression profile
    - PayloadCompressor:  Keeps frame payloads under the size ceiling
    - VitalsEstimator:    Interface to a vitals-estimation backend
    - VitalsService:      httpx client for the external vitals service
    - UploadService:      Upload validation and base64/JSON decoding
    - MetricService:      Persists vitals as metric records
    - AnalysisService:    Orchestrates compress → analyze → save
"""
