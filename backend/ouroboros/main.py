"""
Ouroboros Foundation Portal - Main Application

Clearance-gated internal portal with:
- Numeric clearance levels (0-5) and colour security classes
- Per-project access rules by user, department, rank or clearance
- Redaction of reports and logbook entries below a viewer's clearance
- Proposal review and promotion to projects
- Audit logging of every access decision
"""
import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ouroboros.auth import decode_token, resolve_identity
from ouroboros.classification import visible_security_classes
from ouroboros.clearance import clearance_info
from ouroboros.config import settings
from ouroboros.database import get_db
from ouroboros.exceptions import AlreadyExists, InvalidRule, ProposalStateError
from ouroboros.routes import admin, audit_routes, departments, projects, proposals, reports

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
logger = logging.getLogger("ouroboros")

optional_bearer = HTTPBearer(auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Ouroboros portal API starting (issuer=%s)", settings.AUTH_ISSUER_URL)
    yield
    logger.info("Ouroboros portal API shutting down")


app = FastAPI(
    title="Ouroboros Foundation Portal API",
    description="""
Clearance-gated research portal:
- **Clearance**: Level 0 (Uncleared) → Level 5 (Archmagos)
- **Security classes**: GREEN (1) → AMBER (2) → RED (4) → BLACK (5)
- **Access rules**: explicit grants by user, department, rank or clearance
- **Redaction**: reports and logbook entries gated by minimum clearance
- **Audit Trail**: Every access attempt is logged
    """,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(projects.router)
app.include_router(reports.router)
app.include_router(proposals.router)
app.include_router(departments.router)
app.include_router(admin.router)
app.include_router(audit_routes.router)


# ─── Domain error mapping ─────────────────────────────────────────────────

@app.exception_handler(InvalidRule)
async def invalid_rule_handler(request: Request, exc: InvalidRule):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(AlreadyExists)
async def already_exists_handler(request: Request, exc: AlreadyExists):
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(ProposalStateError)
async def proposal_state_handler(request: Request, exc: ProposalStateError):
    content = {"error": str(exc)}
    if exc.project_id:
        content["project_id"] = str(exc.project_id)
    return JSONResponse(status_code=409, content=content)


@app.get("/", tags=["Health"])
async def root():
    return {
        "service": "Ouroboros Foundation Portal",
        "status": "running",
        "docs": "/docs",
        "endpoints": {
            "projects": "/api/projects",
            "reports": "/api/reports",
            "proposals": "/api/proposals",
            "departments": "/api/departments",
            "admin": "/api/admin",
            "audit": "/api/audit",
        },
    }


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "healthy"}


@app.get("/api/auth/me", tags=["Auth"])
async def me(
    credentials: HTTPAuthorizationCredentials = Depends(optional_bearer),
    db: AsyncSession = Depends(get_db),
):
    """Current identity and clearance, for the frontend header."""
    if credentials is None:
        return {"authenticated": False}

    try:
        payload = await decode_token(credentials.credentials)
    except JWTError as e:
        return {"authenticated": False, "error": str(e)}

    identity = await resolve_identity(db, payload)
    if identity is None:
        return {"authenticated": False, "error": "No active portal account"}

    info = clearance_info(identity.clearance_level)
    return {
        "authenticated": True,
        "id": str(identity.id),
        "username": identity.username,
        "clearance_level": info.level,
        "clearance_title": info.title,
        "capabilities": sorted(info.capabilities),
        "security_classes": [sc.value for sc in visible_security_classes(info.level)],
        "department_ids": sorted(str(d) for d in identity.department_ids),
        "rank_id": str(identity.rank_id) if identity.rank_id else None,
    }
