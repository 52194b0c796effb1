"""
Vending Machine Service - API
============================
FastAPI application for registering machines and running purchases
"""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, StrictInt

from vending import __version__
from vending.config import DEFAULT_CONFIG_PATH, ConfigError, Settings, load_config
from vending.core import (
    BadState,
    Item,
    MachineEvent,
    MachineFault,
    PurchaseMachine,
    VendingError,
)
from vending.db import MachineNotFound, MachineStore, create_store

logger = logging.getLogger(__name__)


# ── Request/Response Models ───────────────────────────────────────────────────

class ItemModel(BaseModel):
    name: str = Field(min_length=1)
    count: int = Field(ge=0, validation_alias=AliasChoices("count", "number"))
    price: int = Field(ge=0)


class AddMachineRequest(BaseModel):
    inventory: List[ItemModel] = Field(default_factory=list)


class InsertFundsRequest(BaseModel):
    inserted_amount: Optional[StrictInt] = None


class SelectProductRequest(BaseModel):
    selected_product: Optional[str] = None


class EventData(BaseModel):
    inserted_amount: Optional[StrictInt] = None
    selected_product: Optional[str] = None


class EventRequest(BaseModel):
    event: MachineEvent
    data: EventData = Field(default_factory=EventData)


# Flat routes carry the machine id in the body
class MachineIdRequest(BaseModel):
    machine_id: str


class LegacyInsertRequest(MachineIdRequest, InsertFundsRequest):
    pass


class LegacySelectRequest(MachineIdRequest, SelectProductRequest):
    pass


# ── Error Mapping ─────────────────────────────────────────────────────────────

class MissingValue(Exception):
    """Request is well-formed JSON but lacks a required value"""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message})


async def _not_found_handler(request: Request, exc: MachineNotFound) -> JSONResponse:
    return _error(404, str(exc))


async def _bad_state_handler(request: Request, exc: BadState) -> JSONResponse:
    return _error(409, str(exc))


async def _vending_error_handler(request: Request, exc: VendingError) -> JSONResponse:
    # InvalidProduct, OutOfStock, InsufficientFunds, MissingInput
    return _error(400, str(exc))


async def _fault_handler(request: Request, exc: MachineFault) -> JSONResponse:
    logger.error("Machine fault on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return _error(500, str(exc))


async def _missing_value_handler(request: Request, exc: MissingValue) -> JSONResponse:
    return _error(400, str(exc))


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, f"failed to decode request: {exc.errors()}")


async def _unexpected_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error(500, "internal server error")


# ── Endpoints ─────────────────────────────────────────────────────────────────

router = APIRouter()


def get_store(request: Request) -> MachineStore:
    return request.app.state.store


def _require_amount(req: InsertFundsRequest) -> int:
    if req.inserted_amount is None:
        raise MissingValue("no amount inserted")
    return req.inserted_amount


def _require_product(req: SelectProductRequest) -> str:
    if not req.selected_product:
        raise MissingValue("no product was selected")
    return req.selected_product


@router.get("/")
async def root():
    return {
        "service": "Vending Machine Service",
        "version": __version__,
        "status": "running",
    }


@router.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}


@router.post("/machines")
async def add_machine(req: AddMachineRequest, store: MachineStore = Depends(get_store)):
    """Register a new machine stocked with the given inventory"""
    machine = PurchaseMachine(Item(name=i.name, count=i.count, price=i.price) for i in req.inventory)
    machine_id = await store.save(machine)
    return {"machine_id": machine_id}


@router.get("/machines/{machine_id}")
async def get_machine(machine_id: str, store: MachineStore = Depends(get_store)):
    machine = await store.get(machine_id)
    return {"machine_id": machine_id, **machine.snapshot().to_dict()}


@router.get("/machines/{machine_id}/history")
async def get_machine_history(machine_id: str, store: MachineStore = Depends(get_store)):
    """Full transition history for a machine (audit trail)"""
    records = await store.history(machine_id)
    return {
        "machine_id": machine_id,
        "event_count": len(records),
        "events": [r.to_dict() for r in records],
    }


async def _insert(store: MachineStore, machine_id: str, amount: int) -> dict:
    _, snapshot = await store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": amount})
    return {"message": "inserted coin successfully", "machine": snapshot.to_dict()}


async def _select_and_deliver(store: MachineStore, machine_id: str, product: str) -> dict:
    await store.apply(machine_id, MachineEvent.SELECT_PRODUCT, {"selected_product": product})
    delivered, snapshot = await store.apply(machine_id, MachineEvent.DELIVER)
    return {
        "message": "selected and delivered product successfully",
        "product": delivered.product,
        "remaining_amount": delivered.inserted_amount,
        "machine": snapshot.to_dict(),
    }


async def _abort(store: MachineStore, machine_id: str) -> dict:
    _, snapshot = await store.apply(machine_id, MachineEvent.ABORT)
    return {"message": "aborted successfully", "machine": snapshot.to_dict()}


@router.post("/machines/{machine_id}/insert")
async def insert_funds(machine_id: str, req: InsertFundsRequest, store: MachineStore = Depends(get_store)):
    return await _insert(store, machine_id, _require_amount(req))


@router.post("/machines/{machine_id}/select")
async def select_product(machine_id: str, req: SelectProductRequest, store: MachineStore = Depends(get_store)):
    """Select a product and have it delivered right away"""
    return await _select_and_deliver(store, machine_id, _require_product(req))


@router.post("/machines/{machine_id}/abort")
async def abort_order(machine_id: str, store: MachineStore = Depends(get_store)):
    return await _abort(store, machine_id)


@router.post("/machines/{machine_id}/events")
async def apply_event(machine_id: str, req: EventRequest, store: MachineStore = Depends(get_store)):
    """Drive the machine one event at a time"""
    transition, snapshot = await store.apply(machine_id, req.event, req.data.model_dump(exclude_none=True))
    return {"transition": transition.to_dict(), "machine": snapshot.to_dict()}


# Flat routes, machine id in the body

@router.post("/addvm")
async def add_vm(req: AddMachineRequest, store: MachineStore = Depends(get_store)):
    return await add_machine(req, store)


@router.post("/insert")
async def insert_coin(req: LegacyInsertRequest, store: MachineStore = Depends(get_store)):
    return await _insert(store, req.machine_id, _require_amount(req))


@router.post("/select")
async def select_and_deliver(req: LegacySelectRequest, store: MachineStore = Depends(get_store)):
    return await _select_and_deliver(store, req.machine_id, _require_product(req))


@router.post("/abort")
async def abort_and_reset(req: MachineIdRequest, store: MachineStore = Depends(get_store)):
    return await _abort(store, req.machine_id)


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, store: Optional[MachineStore] = None) -> FastAPI:
    settings = settings or Settings()
    if store is None:
        store = create_store(
            settings.storage.backend,
            database_url=settings.storage.database_url,
            echo=settings.storage.echo,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.start()
        try:
            yield
        finally:
            await store.close()
            logger.info("Machine store closed")

    app = FastAPI(
        title="Vending Machine Service",
        description="FSM-driven vending machine purchases",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store

    app.add_exception_handler(MachineNotFound, _not_found_handler)
    app.add_exception_handler(BadState, _bad_state_handler)
    app.add_exception_handler(MachineFault, _fault_handler)
    app.add_exception_handler(VendingError, _vending_error_handler)
    app.add_exception_handler(MissingValue, _missing_value_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(Exception, _unexpected_handler)

    app.include_router(router)
    return app


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the vending machine service")
    parser.add_argument(
        "--configpath",
        default=DEFAULT_CONFIG_PATH,
        help=f"path to config yaml file, default: {DEFAULT_CONFIG_PATH}",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        settings = load_config(args.configpath)
    except ConfigError as exc:
        logger.error("Failed to load config: %s", exc)
        return 1

    logging.getLogger().setLevel(settings.logging.level)

    app = create_app(settings)
    logger.info("Listening on %s:%s", settings.server.host, settings.server.port)

    # uvicorn drains in-flight requests on SIGINT/SIGTERM
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        timeout_keep_alive=settings.server.keep_alive_timeout_seconds,
        timeout_graceful_shutdown=settings.server.shutdown_timeout_seconds,
        log_level=settings.logging.level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
