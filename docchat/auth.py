"""OAuth sign-in against Google/GitHub and JWT session handling."""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from urllib.parse import urlencode, urlsplit
import httpx
import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session
from loguru import logger
from .config import get_settings
from .database import get_db
from .models import User, Account, SessionUser

settings = get_settings()

JWT_ALGORITHM = "HS256"
STATE_KEY_PREFIX = "oauth_state:"


@dataclass
class OAuthProfile:
    provider_account_id: str
    email: Optional[str]
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = False


@dataclass
class OAuthProvider(ABC):
    """Authorization-code flow shared by every identity provider"""

    id: str
    name: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    authorization_params: Dict[str, str] = field(default_factory=dict)

    def redirect_uri(self) -> str:
        return f"{settings.api_base_url.rstrip('/')}/auth/callback/{self.id}"

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri(),
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        params.update(self.authorization_params)
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> Dict[str, Any]:
        response = await client.post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri(),
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        tokens = response.json()
        if "access_token" not in tokens:
            raise ValueError(tokens.get("error_description") or tokens.get("error") or "No access token returned")
        return tokens

    @abstractmethod
    async def fetch_profile(self, client: httpx.AsyncClient, tokens: Dict[str, Any]) -> OAuthProfile:
        pass


class GoogleProvider(OAuthProvider):
    async def fetch_profile(self, client: httpx.AsyncClient, tokens: Dict[str, Any]) -> OAuthProfile:
        response = await client.get(
            self.userinfo_url,
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        response.raise_for_status()
        data = response.json()
        return OAuthProfile(
            provider_account_id=str(data["sub"]),
            email=data.get("email"),
            name=data.get("name"),
            image=data.get("picture"),
            email_verified=bool(data.get("email_verified")),
        )


class GitHubProvider(OAuthProvider):
    emails_url = "https://api.github.com/user/emails"

    async def fetch_profile(self, client: httpx.AsyncClient, tokens: Dict[str, Any]) -> OAuthProfile:
        headers = {
            "Authorization": f"Bearer {tokens['access_token']}",
            "Accept": "application/vnd.github+json",
        }
        response = await client.get(self.userinfo_url, headers=headers)
        response.raise_for_status()
        data = response.json()

        email = data.get("email")
        verified = False
        if not email:
            # Private e-mail addresses only show up on the emails endpoint
            emails_response = await client.get(self.emails_url, headers=headers)
            emails_response.raise_for_status()
            primary = next((e for e in emails_response.json() if e.get("primary")), None)
            if primary:
                email = primary.get("email")
                verified = bool(primary.get("verified"))

        return OAuthProfile(
            provider_account_id=str(data["id"]),
            email=email,
            name=data.get("name") or data.get("login"),
            image=data.get("avatar_url"),
            email_verified=verified,
        )


def get_providers() -> Dict[str, OAuthProvider]:
    """Providers with credentials configured"""
    providers = {}
    if settings.google_client_id:
        providers["google"] = GoogleProvider(
            id="google",
            name="Google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret or "",
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
            scope="openid email profile",
            authorization_params={"prompt": "consent", "access_type": "offline"},
        )
    if settings.github_client_id:
        providers["github"] = GitHubProvider(
            id="github",
            name="GitHub",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret or "",
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            userinfo_url="https://api.github.com/user",
            scope="read:user user:email",
        )
    return providers


def resolve_redirect(url: Optional[str], base_url: str) -> str:
    """Only allow redirects back into the web app"""
    if not url:
        return base_url
    if url.startswith("/"):
        return f"{base_url.rstrip('/')}{url}"

    target, base = urlsplit(url), urlsplit(base_url)
    if (target.scheme, target.netloc) == (base.scheme, base.netloc):
        return url
    return base_url


def new_state() -> str:
    return secrets.token_urlsafe(32)


def create_session_token(user: User, now: datetime = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "picture": user.image,
        "iat": now,
        "exp": now + timedelta(days=settings.session_max_age_days),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=JWT_ALGORITHM)


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Session token expired")
        raise HTTPException(status_code=401, detail="Unauthorized")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid session token: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")


def _token_from_request(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.cookies.get(settings.session_cookie_name)


async def get_session_claims(request: Request) -> Dict[str, Any]:
    """Decoded session token, 401 when absent or invalid"""
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    claims = decode_session_token(token)
    if not claims.get("email"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return claims


async def get_session_user(claims: Dict[str, Any] = Depends(get_session_claims)) -> SessionUser:
    return SessionUser(
        id=claims.get("sub"),
        email=claims["email"],
        name=claims.get("name"),
        image=claims.get("picture"),
    )


async def get_current_user(
    session_user: SessionUser = Depends(get_session_user),
    db: Session = Depends(get_db)
) -> User:
    """The database user behind the session, 404 when it no longer exists"""
    user = db.query(User).filter(User.email == session_user.email).first()
    if not user:
        logger.warning(f"User not found in database for email: {session_user.email}")
        raise HTTPException(status_code=404, detail="User not found")
    return user


def upsert_oauth_user(db: Session, provider: OAuthProvider, profile: OAuthProfile,
                      tokens: Dict[str, Any]) -> User:
    """Create or update the user and the linked provider account"""
    if not profile.email:
        raise ValueError(f"{provider.name} did not return an e-mail address")

    account = db.query(Account).filter(
        Account.provider == provider.id,
        Account.provider_account_id == profile.provider_account_id
    ).first()

    user = account.user if account else db.query(User).filter(User.email == profile.email).first()
    if user is None:
        user = User(email=profile.email)
        db.add(user)
        logger.info(f"Creating user for {profile.email}")

    user.name = profile.name or user.name
    user.image = profile.image or user.image
    if profile.email_verified and user.email_verified is None:
        user.email_verified = datetime.now(timezone.utc)

    if account is None:
        account = Account(provider=provider.id, provider_account_id=profile.provider_account_id)
        user.accounts.append(account)

    account.access_token = tokens.get("access_token")
    account.refresh_token = tokens.get("refresh_token") or account.refresh_token
    account.token_type = tokens.get("token_type")
    account.scope = tokens.get("scope")
    account.id_token = tokens.get("id_token")
    if tokens.get("expires_in"):
        account.expires_at = int(datetime.now(timezone.utc).timestamp()) + int(tokens["expires_in"])

    db.commit()
    db.refresh(user)
    return user


def auth_error_message(error: Optional[str]) -> str:
    providers = {"google": "Google", "github": "GitHub"}
    if error in providers:
        name = providers[error]
        return f"There was an error signing in with {name}. Please check your {name} OAuth configuration."
    return "There was an error during authentication. Please try again."


def configured_provider_names() -> List[str]:
    return list(get_providers().keys())
