"""Authentication helpers for FastAPI endpoints.

- Bearer JWTs (HS256, settings.secret_key) are accepted in every environment.
- X-User-* headers are only respected in development and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from delguur.infra import jwt as jwt_helper
from delguur.moderation.domain.models import Location
from delguur.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()
	location: Optional[Location] = None
	display_name: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def _split_roles(raw: object) -> Tuple[str, ...]:
	if isinstance(raw, (list, tuple)):
		return tuple(str(r).strip() for r in raw if str(r).strip())
	if isinstance(raw, str):
		return tuple(part.strip() for part in raw.split(",") if part.strip())
	return ()


def _location(aimag: object, soum: object) -> Optional[Location]:
	aimag_value = str(aimag or "").strip()
	if not aimag_value:
		return None
	soum_value = str(soum or "").strip()
	return Location(aimag=aimag_value, soum=soum_value or None)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None

	display_name = payload.get("name") or payload.get("display_name")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		roles=_split_roles(payload.get("roles") or payload.get("role")),
		location=_location(payload.get("aimag"), payload.get("soum")),
		display_name=str(display_name) if display_name is not None else None,
	)


@dataclass(slots=True)
class _HeaderIdentity:
	user_id: Optional[str]
	roles: Optional[str]
	aimag: Optional[str]
	soum: Optional[str]

	def to_user(self) -> Optional[AuthenticatedUser]:
		if not self.user_id or not settings.is_dev():
			return None
		return AuthenticatedUser(
			id=self.user_id,
			roles=_split_roles(self.roles),
			location=_location(self.aimag, self.soum),
		)


def _header_identity(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
	x_user_aimag: Optional[str] = Header(default=None, alias="X-User-Aimag"),
	x_user_soum: Optional[str] = Header(default=None, alias="X-User-Soum"),
) -> _HeaderIdentity:
	return _HeaderIdentity(x_user_id, x_user_roles, x_user_aimag, x_user_soum)


def _resolve(
	identity: _HeaderIdentity, credentials: Optional[HTTPAuthorizationCredentials]
) -> Optional[AuthenticatedUser]:
	if credentials is not None and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	return identity.to_user()


async def get_current_user(
	identity: _HeaderIdentity = Depends(_header_identity),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""A Bearer JWT wins; X-User-* headers count only in development and tests."""
	user = _resolve(identity, credentials)
	if user is None:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	return user


async def get_optional_user(
	identity: _HeaderIdentity = Depends(_header_identity),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[AuthenticatedUser]:
	"""Anonymous browsing resolves to None; a bad token is still rejected."""
	if identity.user_id is None and credentials is None:
		return None
	return _resolve(identity, credentials)


async def get_admin_user(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
	if user.has_role("admin"):
		return user
	raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")
