"""
Identity service: accounts, credentials and tokens.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.base_service import BaseService, envelope
from shared.auth import extract_bearer_token
from shared.document_store import JsonDocumentStore
from shared.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from shared.logging import set_user_context
from shared.messaging import USER_CREATED, USER_EVENTS, USER_UPDATED
from service_users.app.security import TokenIssuer, hash_password, verify_password


class RegisterRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class LoginRequest(BaseModel):
    identifier: Optional[str] = None
    password: Optional[str] = None


class ValidateRequest(BaseModel):
    token: Optional[str] = None


class UserUpdateRequest(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    defaultStore: Optional[str] = None
    currency: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """A user record without credentials or storage bookkeeping."""
    return {key: value for key, value in user.items() if key not in ("password", "_rev")}


class UserService(BaseService):
    """Identity service implementation."""

    endpoints = ["/health", "/auth/register", "/auth/login", "/auth/validate", "/users", "/search"]

    def __init__(self, data_dir: Optional[str] = None, **kwargs):
        self._data_dir = data_dir
        super().__init__("user-service", 3001, **kwargs)

    def _setup_service_routes(self):
        self.users_db = JsonDocumentStore(self._data_dir or f"{self.config.data_dir}/users", "users")
        self.tokens = TokenIssuer(self.config.jwt_secret, self.config.jwt_expires_hours)

        async def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
            claims = self.tokens.decode(extract_bearer_token(authorization))
            set_user_context(claims.get("id"))
            return claims

        @self.app.get("/")
        async def root():
            return {
                "service": "User Service",
                "version": self.version,
                "description": "Account management and authentication",
                "endpoints": self.endpoints,
            }

        @self.app.get("/users")
        async def get_users(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                            role: Optional[str] = None, status: Optional[str] = None,
                            user: Dict[str, Any] = Depends(current_user)):
            query = {}
            if role:
                query["role"] = role
            if status:
                query["status"] = status

            users = await self.users_db.find(query, sort={"createdAt": -1},
                                             skip=(page - 1) * limit, limit=limit)
            total = await self.users_db.count(query)
            return envelope(
                [public_user(u) for u in users],
                pagination={"page": page, "limit": limit, "total": total,
                            "pages": -(-total // limit) or 1},
            )

        @self.app.get("/search")
        async def search_users(q: Optional[str] = None, limit: int = Query(10, ge=1, le=100),
                               user: Dict[str, Any] = Depends(current_user)):
            if not q:
                raise ValidationError('Search parameter "q" is required', field="q")
            matches = await self.users_db.search(q, ["firstName", "lastName", "username", "email"])
            results = [public_user(u) for u in matches if u.get("status") == "active"][:limit]
            return envelope({"query": q, "results": results, "total": len(results)})

        auth = APIRouter()

        @auth.post("/register", status_code=201)
        async def register(body: RegisterRequest):
            return await self.register(body)

        @auth.post("/login")
        async def login(body: LoginRequest):
            return await self.login(body)

        @auth.post("/validate")
        async def validate(body: ValidateRequest):
            return await self.validate_token(body.token)

        members = APIRouter()

        @members.get("/{user_id}")
        async def get_user(user_id: str, user: Dict[str, Any] = Depends(current_user)):
            self._require_self_or_admin(user, user_id)
            record = await self.users_db.find_by_id(user_id)
            if not record:
                raise NotFoundError("User not found")
            return envelope(public_user(record))

        @members.put("/{user_id}")
        async def update_user(user_id: str, body: UserUpdateRequest,
                              user: Dict[str, Any] = Depends(current_user)):
            return await self.update_user(user, user_id, body)

        # Gateway-relative aliases: the router strips /api/auth and /api/users
        self.app.include_router(auth, prefix="/auth")
        self.app.include_router(auth, include_in_schema=False)
        self.app.include_router(members, prefix="/users")
        self.app.include_router(members, include_in_schema=False)

    @staticmethod
    def _require_self_or_admin(user: Dict[str, Any], user_id: str):
        if user.get("id") != user_id and user.get("role") != "admin":
            raise AuthorizationError("Access denied")

    def _issue(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {"user": public_user(user), "token": self.tokens.issue(user)}

    async def register(self, body: RegisterRequest):
        missing = [name for name in ("email", "username", "password", "firstName", "lastName")
                   if not getattr(body, name)]
        if missing:
            raise ValidationError("All fields are required", field=missing[0])

        email = body.email.lower()
        username = body.username.lower()
        if await self.users_db.find_one({"email": email}):
            raise ConflictError("Email already in use")
        if await self.users_db.find_one({"username": username}):
            raise ConflictError("Username already in use")

        now = _now()
        user = await self.users_db.create({
            "id": str(uuid.uuid4()),
            "email": email,
            "username": username,
            "password": hash_password(body.password, self.config.password_hash_rounds),
            "firstName": body.firstName,
            "lastName": body.lastName,
            "role": "user",
            "status": "active",
            "preferences": {"defaultStore": "Main", "currency": "BRL"},
            "createdAt": now,
            "updatedAt": now,
        })

        await self.broker.publish(USER_EVENTS, USER_CREATED, {
            "id": user["id"],
            "username": user["username"],
            "email": user["email"],
            "createdAt": user["createdAt"],
        })
        self.metrics.record_business_event("user_registered")

        return JSONResponse(status_code=201,
                            content=envelope(self._issue(user), message="User created"))

    async def login(self, body: LoginRequest):
        if not body.identifier or not body.password:
            raise ValidationError("Identifier and password are required",
                                  field="identifier" if not body.identifier else "password")

        identifier = body.identifier.lower()
        user = await self.users_db.find_one({"$or": [{"email": identifier}, {"username": identifier}]})
        if not user or not verify_password(body.password, user["password"]):
            raise AuthenticationError("Invalid credentials")
        if user.get("status") != "active":
            raise AuthorizationError("Account disabled")

        user = await self.users_db.update(user["id"], {"lastLogin": _now()})
        return envelope(self._issue(user), message="Login successful")

    async def validate_token(self, token: Optional[str]):
        if not token:
            raise ValidationError("Token is required", field="token")

        claims = self.tokens.decode(token)
        user = await self.users_db.find_by_id(claims.get("id", ""))
        if not user or user.get("status") != "active":
            raise AuthenticationError("User not found or inactive")
        return envelope({"user": public_user(user)}, message="Token valid")

    async def update_user(self, caller: Dict[str, Any], user_id: str, body: UserUpdateRequest):
        self._require_self_or_admin(caller, user_id)

        user = await self.users_db.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")

        updates: Dict[str, Any] = {}
        if body.firstName:
            updates["firstName"] = body.firstName
        if body.lastName:
            updates["lastName"] = body.lastName
        if body.email:
            email = body.email.lower()
            owner = await self.users_db.find_one({"email": email})
            if owner and owner["id"] != user_id:
                raise ConflictError("Email already in use")
            updates["email"] = email
        if body.defaultStore:
            updates["preferences.defaultStore"] = body.defaultStore
        if body.currency:
            updates["preferences.currency"] = body.currency
        updates["updatedAt"] = _now()

        updated = await self.users_db.update(user_id, updates)

        await self.broker.publish(USER_EVENTS, USER_UPDATED, {
            "id": updated["id"],
            "username": updated["username"],
            "updatedAt": updated["updatedAt"],
        })
        return envelope(public_user(updated), message="User updated")

    async def seed_initial_data(self):
        if await self.users_db.count():
            return
        now = _now()
        await self.users_db.create({
            "id": str(uuid.uuid4()),
            "email": "admin@microservices.com",
            "username": "admin",
            "password": hash_password("admin123", self.config.password_hash_rounds),
            "firstName": "Admin",
            "lastName": "System",
            "role": "admin",
            "status": "active",
            "preferences": {"defaultStore": "Main", "currency": "BRL"},
            "createdAt": now,
            "updatedAt": now,
        })
        self.logger.info("Admin account seeded", email="admin@microservices.com")

    async def on_startup(self):
        await self.seed_initial_data()

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {"database": {"type": "JSON-NoSQL", "userCount": await self.users_db.count()}}


def create_app(**kwargs):
    """Create FastAPI application."""
    return UserService(**kwargs).app


if __name__ == "__main__":
    UserService().run()
