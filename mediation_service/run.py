#!/usr/bin/env python3
"""
Quick runner for Mediation Service
==================================

Usage:
    python -m mediation_service.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Mediation Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "mediation_service.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
