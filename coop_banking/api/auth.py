"""
Authentication dependencies

Caller identity is carried by a bearer JWT with `sub`, `role` and
`tenant_id` claims. Credential issuance beyond `create_access_token` lives
outside this service.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..access import Actor, Role
from ..config import CoopBankConfig
from ..errors import ValidationError
from ..logging_config import get_logger, log_action
from ..system import BankingSystem

logger = get_logger("coop_banking.api.auth")

# JWT Security
security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    """Dependency returning the system the app was built with"""
    return request.app.state.banking_system


def create_access_token(actor_id: str, role: Role, tenant_id: Optional[str],
                        config: CoopBankConfig, expires_in: Optional[timedelta] = None) -> str:
    """Issue a signed token for an already authenticated caller"""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": actor_id,
        "role": role.value if isinstance(role, Role) else role,
        "tenant_id": tenant_id,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=config.jwt_expiry_hours))
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def get_current_actor(credentials: HTTPAuthorizationCredentials = Depends(security),
                      system: BankingSystem = Depends(get_banking_system)) -> Actor:
    """Dependency that validates the JWT and resolves the caller"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, system.config.jwt_secret,
                             algorithms=[system.config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        return Actor(actor_id=payload.get("sub"), role=payload.get("role"),
                     tenant_id=payload.get("tenant_id"))
    except ValidationError as e:
        log_action(logger, "warning", f"Rejected token claims: {e.message}",
                   user_id=payload.get("sub"), action="authenticate", resource="auth")
        raise HTTPException(status_code=401, detail="Invalid token")
