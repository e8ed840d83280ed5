"""FastAPI dependencies for the injected services."""
from functools import lru_cache

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import get_db
from .services.chain import SignerChainController
from .services.notifications import build_notifier
from .services.signing import SigningService
from .services.storage import build_storage
from .services.tokens import TokenService


@lru_cache()
def get_storage():
    return build_storage(get_settings())


@lru_cache()
def get_notifier():
    return build_notifier(get_settings())


def get_tokens(settings: Settings = Depends(get_settings)) -> TokenService:
    return TokenService.from_settings(settings)


def get_signing_service(
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    notifier=Depends(get_notifier),
    settings: Settings = Depends(get_settings),
    tokens: TokenService = Depends(get_tokens),
) -> SigningService:
    return SigningService(db, storage, notifier, settings, tokens=tokens)


def bearer_token(authorization: str = Header(default=None)):
    """The raw token from an ``Authorization: Bearer`` header, if any."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def get_chain_controller(
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    notifier=Depends(get_notifier),
    settings: Settings = Depends(get_settings),
    tokens: TokenService = Depends(get_tokens),
) -> SignerChainController:
    return SignerChainController(db, storage, notifier, tokens, settings)
