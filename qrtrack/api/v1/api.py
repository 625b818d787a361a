"""
V1 API router aggregator — wires all endpoint modules together.
"""

from fastapi import APIRouter

from qrtrack.api.v1.endpoints import (attendance, devices, health, qr_codes,
                                      scan, settings)

api_router = APIRouter()

# Scan pipeline (member devices)
api_router.include_router(scan.router)

# Day ledgers: live status, history, override, finalize, review
api_router.include_router(attendance.router)

# Device bindings and change requests
api_router.include_router(devices.router)

# QR code lifecycle
api_router.include_router(qr_codes.router)

# Organization settings and working policies
api_router.include_router(settings.router)

# Health
api_router.include_router(health.router)
