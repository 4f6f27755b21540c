"""
REST API endpoints for the signaling service
"""
from fastapi import Request


async def read_root():
    """Root endpoint"""
    return {"message": "Signaling service is running."}


async def health():
    return {"status": "ok"}


async def api_stats(request: Request):
    """Counts of connected, waiting and paired clients"""
    state = request.app.state.signaling
    return state.stats()
