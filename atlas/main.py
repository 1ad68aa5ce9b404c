"""FastAPI application for the Atlas hierarchy service.

Thin glue over the core: every route resolves the caller, asks the AccessGate,
then calls the IntegrityGuard or the AggregationEngine. Caller identity is
resolved upstream and arrives as trusted X-Atlas-* headers.
"""

import logging
from contextlib import asynccontextmanager

import logfire
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.requests import Request

from .access import AccessGate
from .aggregation import AggregationEngine
from .clock import Clock, utc_now
from .config import CORS_ORIGINS, LOG_LEVEL, LOGFIRE_TOKEN
from .database import engine, get_db, init_db
from .errors import AtlasError, InvalidRelationship, Unavailable
from .integrity import IntegrityGuard
from .store import CHILD_LINKS, PARENT_LINKS, SqlAlchemyStore
from .schemas import (
    CREATE_SCHEMAS,
    READ_SCHEMAS,
    UPDATE_SCHEMAS,
    AccessDecision,
    BarangayStatistics,
    CallerIdentity,
    CallerScope,
    DeletionCheck,
    HouseholdHeadRequest,
    MoveRequest,
    MunicipalityReport,
    MunicipalityStatistics,
    NodeType,
    Operation,
    ResidentRead,
    SubtreeRoot,
    SystemOverview,
    SystemStatistics,
    UserRole,
    ZoneStatistics,
)

logger = logging.getLogger(__name__)
logging.getLogger("atlas").setLevel(LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Atlas API",
    description="Municipality → Barangay → Zone → Household → Resident records service",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if LOGFIRE_TOKEN:
    logfire.configure()
    logfire.instrument_fastapi(app)
    logfire.instrument_sqlalchemy(engine=engine)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ERROR HANDLING
# =============================================================================


@app.exception_handler(AtlasError)
async def atlas_error_handler(request: Request, exc: AtlasError):
    if isinstance(exc, Unavailable):
        logger.warning(f"{request.method} {request.url.path}: store unavailable")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def payload_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors(include_url=False, include_context=False))},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=503, content=Unavailable().to_dict())


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_clock() -> Clock:
    return utc_now


def get_store(db: Session = Depends(get_db)) -> SqlAlchemyStore:
    return SqlAlchemyStore(db)


def get_caller(
    x_atlas_role: str | None = Header(default=None),
    x_atlas_municipality_id: int | None = Header(default=None),
    x_atlas_barangay_id: int | None = Header(default=None),
    x_atlas_zone_id: int | None = Header(default=None),
    x_atlas_resident_id: int | None = Header(default=None),
) -> CallerIdentity:
    """Caller identity as resolved by the upstream authenticator."""
    if not x_atlas_role:
        raise HTTPException(status_code=401, detail="Caller identity required")
    try:
        role = UserRole(x_atlas_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_atlas_role}") from None

    return CallerIdentity(
        role=role,
        scope=CallerScope(
            municipality_id=x_atlas_municipality_id,
            barangay_id=x_atlas_barangay_id,
            zone_id=x_atlas_zone_id,
            resident_id=x_atlas_resident_id,
        ),
    )


def get_land_areas(
    land_area: list[str] = Query(
        default=[],
        description="Caller-supplied land area as municipality_id:km2, repeatable.",
    ),
) -> dict[int, float]:
    """Land areas from the caller, overriding stored values for density."""
    areas: dict[int, float] = {}
    for item in land_area:
        municipality_id, _, km2 = item.partition(":")
        try:
            areas[int(municipality_id)] = float(km2)
        except ValueError:
            raise HTTPException(
                status_code=422, detail=f"land_area must be municipality_id:km2, got {item!r}"
            ) from None
    return areas


def node_root(node_type: NodeType, node_id: int) -> SubtreeRoot | None:
    """Accounts are managed system-wide, everything else is a subtree."""
    if node_type is NodeType.ADMIN:
        return None
    return SubtreeRoot(node_type=node_type, node_id=node_id)


# =============================================================================
# SESSION / HEALTH
# =============================================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Atlas API"}


@app.get("/api/session/entry-view")
def get_entry_view(
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    """Landing view for the caller's role."""
    return {"role": caller.role.value, "entry_view": AccessGate(store).entry_view(caller.role)}


@app.post("/api/session/authorize")
def check_access(
    target: SubtreeRoot | None = Body(default=None),
    operation: Operation = Operation.READ,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
) -> AccessDecision:
    """Ask the gate without performing anything (used by the UI to hide actions)."""
    return AccessGate(store).authorize(caller, target, operation)


# =============================================================================
# STATISTICS
# =============================================================================


@app.get("/api/stats/system")
def get_system_statistics(
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> SystemStatistics:
    with store.snapshot():
        AccessGate(store).require(caller, None)
        return AggregationEngine(store, clock).system_statistics()


@app.get("/api/stats/municipalities")
def get_municipality_statistics(
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    land_areas: dict[int, float] = Depends(get_land_areas),
) -> list[MunicipalityStatistics]:
    with store.snapshot():
        AccessGate(store).require(caller, None)
        return AggregationEngine(store, clock).municipality_statistics(land_areas)


@app.get("/api/stats/overview")
def get_system_overview(
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    land_areas: dict[int, float] = Depends(get_land_areas),
) -> SystemOverview:
    """Super-admin dashboard: system and per-municipality statistics."""
    with store.snapshot():
        AccessGate(store).require(caller, None)
        return AggregationEngine(store, clock).system_overview(land_areas)


@app.get("/api/municipalities/{municipality_id}/report")
def get_municipality_report(
    municipality_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    land_areas: dict[int, float] = Depends(get_land_areas),
) -> MunicipalityReport:
    with store.snapshot():
        AccessGate(store).require(caller, SubtreeRoot(node_type=NodeType.MUNICIPALITY, node_id=municipality_id))
        return AggregationEngine(store, clock).municipality_report(municipality_id, land_areas)


@app.get("/api/barangays/{barangay_id}/statistics")
def get_barangay_statistics(
    barangay_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> BarangayStatistics:
    with store.snapshot():
        AccessGate(store).require(caller, SubtreeRoot(node_type=NodeType.BARANGAY, node_id=barangay_id))
        return AggregationEngine(store, clock).barangay_statistics(barangay_id)


@app.get("/api/zones/{zone_id}/statistics")
def get_zone_statistics(
    zone_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> ZoneStatistics:
    with store.snapshot():
        AccessGate(store).require(caller, SubtreeRoot(node_type=NodeType.ZONE, node_id=zone_id))
        return AggregationEngine(store, clock).zone_statistics(zone_id)


# =============================================================================
# HIERARCHY MUTATIONS
# =============================================================================


@app.put("/api/household/{household_id}/head")
def set_household_head(
    household_id: int,
    request: HouseholdHeadRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
) -> ResidentRead:
    AccessGate(store).require(
        caller, SubtreeRoot(node_type=NodeType.HOUSEHOLD, node_id=household_id), Operation.WRITE
    )
    resident = IntegrityGuard(store).set_household_head(household_id, request.resident_id)
    return ResidentRead.model_validate(resident)


@app.post("/api/admin/{admin_id}/deactivate")
def deactivate_admin(
    admin_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    AccessGate(store).require(caller, None, Operation.WRITE)
    account = IntegrityGuard(store).deactivate_admin(admin_id)
    return READ_SCHEMAS[NodeType.ADMIN].model_validate(account)


@app.post("/api/admin/{admin_id}/reactivate")
def reactivate_admin(
    admin_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    AccessGate(store).require(caller, None, Operation.WRITE)
    account = IntegrityGuard(store).reactivate_admin(admin_id)
    return READ_SCHEMAS[NodeType.ADMIN].model_validate(account)


@app.post("/api/{node_type}", status_code=201)
def create_node(
    node_type: NodeType,
    body: dict = Body(...),
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    """Create a node beneath the parent named in the payload."""
    payload = CREATE_SCHEMAS[node_type].model_validate(body)

    target = None
    if node_type in PARENT_LINKS:
        parent_type, column = PARENT_LINKS[node_type]
        target = SubtreeRoot(node_type=parent_type, node_id=getattr(payload, column))
    AccessGate(store).require(caller, target, Operation.CREATE)

    row = IntegrityGuard(store).create(node_type, payload)
    return READ_SCHEMAS[node_type].model_validate(row)


@app.put("/api/{node_type}/{node_id}")
def update_node(
    node_type: NodeType,
    node_id: int,
    body: dict = Body(...),
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    payload = UPDATE_SCHEMAS[node_type].model_validate(body)
    AccessGate(store).require(caller, node_root(node_type, node_id), Operation.WRITE)
    row = IntegrityGuard(store).update(node_type, node_id, payload)
    return READ_SCHEMAS[node_type].model_validate(row)


@app.post("/api/{node_type}/{node_id}/move")
def move_node(
    node_type: NodeType,
    node_id: int,
    request: MoveRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    """Re-parent a node. The caller needs WRITE on the node and CREATE on the new parent."""
    gate = AccessGate(store)
    gate.require(caller, node_root(node_type, node_id), Operation.WRITE)
    if node_type in PARENT_LINKS:
        parent_type, _ = PARENT_LINKS[node_type]
        gate.require(
            caller, SubtreeRoot(node_type=parent_type, node_id=request.new_parent_id), Operation.CREATE
        )

    row = IntegrityGuard(store).move(node_type, node_id, request.new_parent_id)
    return READ_SCHEMAS[node_type].model_validate(row)


@app.get("/api/{node_type}/{node_id}/can-delete")
def can_delete_node(
    node_type: NodeType,
    node_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
) -> DeletionCheck:
    AccessGate(store).require(caller, node_root(node_type, node_id), Operation.READ)
    return IntegrityGuard(store).can_delete(node_type, node_id)


@app.delete("/api/{node_type}/{node_id}", status_code=204)
def delete_node(
    node_type: NodeType,
    node_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    AccessGate(store).require(caller, node_root(node_type, node_id), Operation.WRITE)
    IntegrityGuard(store).delete(node_type, node_id)
    return Response(status_code=204)


# =============================================================================
# HIERARCHY READS
# =============================================================================


@app.get("/api/{node_type}")
def list_nodes(
    node_type: NodeType,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    """Every node of one type, system-wide (SuperAdmin)."""
    with store.snapshot():
        AccessGate(store).require(caller, None)
        rows = store.list(node_type)
        return [READ_SCHEMAS[node_type].model_validate(row) for row in rows]


@app.get("/api/{node_type}/{node_id}")
def get_node(
    node_type: NodeType,
    node_id: int,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    with store.snapshot():
        AccessGate(store).require(caller, node_root(node_type, node_id))
        row = store.get(node_type, node_id)
        return READ_SCHEMAS[node_type].model_validate(row)


@app.get("/api/{parent_type}/{parent_id}/{child_type}")
def list_child_nodes(
    parent_type: NodeType,
    parent_id: int,
    child_type: NodeType,
    caller: CallerIdentity = Depends(get_caller),
    store: SqlAlchemyStore = Depends(get_store),
):
    """Children of a node, including residents and accounts anywhere beneath it."""
    if (parent_type, child_type) not in CHILD_LINKS:
        raise InvalidRelationship(f"{child_type.value} is not listed under {parent_type.value}")

    with store.snapshot():
        AccessGate(store).require(caller, node_root(parent_type, parent_id))
        store.get(parent_type, parent_id)
        rows = store.list_children(parent_type, parent_id, child_type)
        return [READ_SCHEMAS[child_type].model_validate(row) for row in rows]
