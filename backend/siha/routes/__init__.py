# Routes package init
"""
SIHA Backend — API Routes Package
===================================

Route Inventory:
    - analysis.py: POST /api/ai/analyze-image
                   POST /api/ai/analyze-video
                   POST /api/ai/analyze-video/base64
                   POST /api/ai/analyze-video-file
    - health.py:   GET  /health

Routes stay thin: extract request data, validate it through UploadService,
delegate to AnalysisService. Errors are rendered by the handlers in main.py.
"""
