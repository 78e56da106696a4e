from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlmodel import select

from db import SessionDep
from matching import CallerContext
from models import Organization
from schemas import LoginData, OrgCreate, OrgRead

router = APIRouter(tags=["auth"])

SESSION_COOKIE = "session"

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _serializer(request: Request) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(request.app.state.settings.session_secret, salt="session")


def create_session_token(request: Request, org_id: int, role: str) -> str:
    """
    Store org_id + role in the signed token.
    Example data:
        {"org_id": 3, "role": "donor"}
    """
    return _serializer(request).dumps({"org_id": org_id, "role": role})


def verify_session_token(request: Request, token: str) -> Optional[dict]:
    """
    Returns dict {'org_id': ..., 'role': ...} if valid,
    or None if token is invalid/expired.
    """
    max_age = request.app.state.settings.session_max_age
    try:
        return _serializer(request).loads(token, max_age=max_age)
    except BadSignature:
        return None


def _set_session_cookie(request: Request, response: Response, org: Organization) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_token(request, org.id, org.role.value),
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=request.app.state.settings.session_max_age,
    )


def get_current_org(
    request: Request,
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Organization:
    """
    Reads the 'session' cookie, verifies the token and looks up the organization.
    Raises 401 if not logged in / invalid.
    """
    if session_token is None:
        raise HTTPException(status_code=401, detail="Not logged in")

    data = verify_session_token(request, session_token)
    if not data:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    org = session.get(Organization, data["org_id"])
    if org is None:
        raise HTTPException(status_code=401, detail="Organization not found for this session")
    return org


CurrentOrgDep = Annotated[Organization, Depends(get_current_org)]


def get_caller(org: CurrentOrgDep) -> CallerContext:
    return CallerContext(org_id=str(org.id), role=org.role)


CallerDep = Annotated[CallerContext, Depends(get_caller)]


@router.post("/register", response_model=OrgRead, status_code=201)
def register(org_in: OrgCreate, request: Request, response: Response, session: SessionDep):
    """
    Register a new donor or recipient organization and log it in.
    """
    existing = session.exec(
        select(Organization).where(Organization.email == org_in.email)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    org = Organization(
        email=org_in.email,
        name=org_in.name,
        role=org_in.role,
        password_hash=hash_password(org_in.password),
    )
    session.add(org)
    session.commit()
    session.refresh(org)

    if org.id is None:
        raise HTTPException(status_code=500, detail="Organization was not created successfully")

    _set_session_cookie(request, response, org)
    return org


@router.post("/login", response_model=OrgRead)
def login(payload: LoginData, request: Request, response: Response, session: SessionDep):
    """
    Log in with email + password and set a signed session cookie.
    """
    org = session.exec(
        select(Organization).where(Organization.email == payload.email)
    ).first()

    if org is None or not verify_password(payload.password, org.password_hash):
        raise HTTPException(status_code=400, detail="Invalid email or password")

    _set_session_cookie(request, response, org)
    return org


@router.post("/logout", status_code=204)
def logout(response: Response):
    """
    Clear the session cookie.
    """
    response.delete_cookie(SESSION_COOKIE)
    return None


@router.get("/me", response_model=OrgRead)
def read_me(org: CurrentOrgDep):
    return org
