#!/usr/bin/env python3
"""
atomswap Server
Cross-chain HTLC swap coordinator.

Endpoints:
  GET  /api/status                  - Health check, chain cursors
  GET  /api/metrics                 - Order counts, volume, deposits
  POST /api/orders                  - Submit order
  GET  /api/orders                  - List orders (?status=&chain=)
  GET  /api/orders/{id}             - Order with locks, fills, deposits
  POST /api/orders/{id}/fills       - Submit partial fill
  POST /api/orders/{id}/reveal      - Claim destination locks with the held secret
  POST /api/orders/{id}/resume      - Re-drive a stuck order (operator)
"""

import os
import time
import logging
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from atomswap import SwapService, CoordinatorConfig, OrderStatus, load_chains_from_env
from atomswap.core import (
    SwapError, ProtocolViolation, OrderNotFound, VersionConflict, LeaseHeld,
    InsufficientRemaining, BelowMinimumFill, FillRejected, InsufficientCollateral,
)
from atomswap.swap.locks import OrderLockTimeout

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# STATE
# =============================================================================

service: Optional[SwapService] = None

# =============================================================================
# MODELS
# =============================================================================

class OrderCreateRequest(BaseModel):
    source_chain: str = Field(..., examples=["chain_a"])
    dest_chain: str = Field(..., examples=["chain_b"])
    source_asset: str = Field(..., examples=["USDC"])
    dest_asset: str = Field(..., examples=["M1"])
    source_amount: int = Field(..., gt=0)
    dest_amount: int = Field(..., gt=0)
    initiator: str
    beneficiary: str
    timelock_source: int                 # Unix seconds, source chain clock
    timelock_dest: int                   # Unix seconds, dest chain clock
    hashlock: Optional[str] = None       # Omit to have the coordinator generate the secret
    hashlocks: Optional[Dict[str, str]] = None
    min_fill_amount: Optional[int] = Field(None, gt=0)
    fill_secret_mode: Optional[str] = None
    lock_source: bool = False
    source_receiver: Optional[str] = None

class OrderCreateResponse(BaseModel):
    order_id: str
    status: str
    hashlock: str
    hashlocks: Dict[str, str]
    acceptance_deadline: int

class FillRequest(BaseModel):
    filler: str
    amount: int = Field(..., gt=0)

# =============================================================================
# HELPERS
# =============================================================================

def get_service() -> SwapService:
    if service is None:
        raise HTTPException(503, "Service not started")
    return service

def to_http_error(e: Exception) -> HTTPException:
    """Map coordinator errors to HTTP status codes."""
    if isinstance(e, OrderNotFound):
        return HTTPException(404, "Order not found")
    if isinstance(e, (ProtocolViolation, BelowMinimumFill, InsufficientRemaining,
                      InsufficientCollateral, ValueError)):
        return HTTPException(400, str(e))
    if isinstance(e, (VersionConflict, LeaseHeld, OrderLockTimeout)):
        return HTTPException(409, f"Order busy, retry: {e}")
    if isinstance(e, (FillRejected, SwapError)):
        return HTTPException(409, str(e))
    return HTTPException(500, str(e))

def parse_status(status: Optional[str]) -> Optional[OrderStatus]:
    if status is None:
        return None
    try:
        return OrderStatus(status)
    except ValueError:
        raise HTTPException(400, f"Unknown status: {status}")

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="atomswap",
    description="Cross-chain HTLC swap coordinator",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    return {
        "name": "atomswap",
        "version": "0.1.0",
        "docs": "/docs",
    }

@app.get("/api/status")
def get_status():
    """Health check."""
    svc = get_service()
    return {
        "status": "ok",
        "timestamp": int(time.time()),
        **svc.status(),
    }

@app.get("/api/metrics")
def get_metrics():
    return get_service().coordinator.metrics()

@app.post("/api/orders", response_model=OrderCreateResponse)
def create_order(req: OrderCreateRequest):
    """Submit a new swap order."""
    coordinator = get_service().coordinator
    try:
        order_id = coordinator.submit_order(req.model_dump(exclude_none=True))
        order = coordinator.get_order(order_id)
    except (SwapError, ValueError) as e:
        raise to_http_error(e)

    return OrderCreateResponse(
        order_id=order_id,
        status=order["status"],
        hashlock=order["hashlock"],
        hashlocks=order["hashlocks"],
        acceptance_deadline=order["acceptance_deadline"],
    )

@app.get("/api/orders")
def list_orders(
    status: Optional[str] = Query(None),
    chain: Optional[str] = Query(None),
    limit: int = Query(50, le=500),
):
    orders: List[Dict[str, Any]] = get_service().coordinator.list_orders(parse_status(status), chain)
    orders = sorted(orders, key=lambda o: o["created_at"], reverse=True)[:limit]
    return {"orders": orders, "count": len(orders)}

@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    try:
        return get_service().coordinator.get_order(order_id)
    except OrderNotFound:
        raise HTTPException(404, "Order not found")

@app.post("/api/orders/{order_id}/fills")
def submit_fill(order_id: str, req: FillRequest):
    """Accept a partial fill; its destination lock is created once the source is locked."""
    try:
        return get_service().coordinator.submit_fill(order_id, req.filler, req.amount)
    except (SwapError, ValueError, OrderLockTimeout) as e:
        raise to_http_error(e)

@app.post("/api/orders/{order_id}/reveal")
def reveal(order_id: str):
    try:
        return get_service().coordinator.reveal(order_id)
    except (SwapError, OrderLockTimeout) as e:
        raise to_http_error(e)

@app.post("/api/orders/{order_id}/resume")
def resume(order_id: str):
    """Operator action for stuck orders."""
    try:
        order = get_service().coordinator.resume(order_id)
    except (SwapError, OrderLockTimeout) as e:
        raise to_http_error(e)
    log.info(f"Order {order_id} resumed via API: {order['status']}")
    return order

# =============================================================================
# STARTUP
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Build and start the swap service from the environment."""
    global service
    if service is None:
        service = SwapService(load_chains_from_env(), CoordinatorConfig.from_env())
    service.start()

@app.on_event("shutdown")
async def shutdown_event():
    if service is not None:
        service.stop()


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting atomswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
