"""
User Directory — Wallet-identified accounts.

A SIWE login either finds the user linked to the recovered address or
creates one. The very first account on a fresh install becomes ADMIN.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from web3 import Web3

from plum_platform.models import User

logger = logging.getLogger("plum.users")

WALLET_EMAIL_DOMAIN = "wallet.plumise.com"

ROLE_ADMIN = "ADMIN"
ROLE_USER = "USER"


def get_user(db: Session, user_id: str) -> Optional[User]:
    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id).one_or_none()


def find_user_by_wallet(db: Session, address: str) -> Optional[User]:
    checksum = Web3.to_checksum_address(address)
    return db.query(User).filter(User.ethereum_address == checksum).one_or_none()


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def find_or_create_siwe_user(db: Session, address: str) -> User:
    """Return the user owning `address`, creating it on first login."""
    checksum = Web3.to_checksum_address(address)

    user = find_user_by_wallet(db, checksum)
    if user:
        return user

    is_first_user = db.query(User.id).limit(1).first() is None
    user = User(
        provider="siwe",
        email=f"{checksum[2:8].lower()}@{WALLET_EMAIL_DOMAIN}",
        username=short_address(checksum),
        name=short_address(checksum),
        role=ROLE_ADMIN if is_first_user else ROLE_USER,
        ethereum_address=checksum,
        email_verified=True,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Same wallet signed in twice at once; the other request created it.
        db.rollback()
        existing = find_user_by_wallet(db, checksum)
        if existing is None:
            raise
        return existing

    db.refresh(user)
    logger.info(f"SIWE user created: {checksum} (role={user.role})")
    return user
