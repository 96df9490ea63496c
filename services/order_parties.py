"""Who is who on an order: buyer, seller (via provider profile) or admin"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Order, OrderRole, Profile, ProviderProfile

logger = logging.getLogger(__name__)


def get_seller_user_id(session: Session, order: Order) -> Optional[str]:
    """Profile id owning the order's seller provider profile"""
    seller = order.seller or session.get(ProviderProfile, order.seller_id)
    return seller.user_id if seller else None


def get_provider_profile_ids(session: Session, user_id: str) -> List[str]:
    return list(
        session.scalars(select(ProviderProfile.id).where(ProviderProfile.user_id == user_id))
    )


def is_admin(session: Session, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    return bool(session.scalar(select(Profile.is_admin).where(Profile.id == user_id)))


def resolve_order_role(session: Session, order: Order, user_id: Optional[str]) -> Optional[OrderRole]:
    """Party role wins over admin so admins who trade act as buyer or seller"""
    if not user_id:
        return None
    if order.buyer_id == user_id:
        return OrderRole.BUYER
    if get_seller_user_id(session, order) == user_id:
        return OrderRole.SELLER
    if is_admin(session, user_id):
        return OrderRole.ADMIN
    return None


def counterparty_user_id(session: Session, order: Order, user_id: Optional[str]) -> Optional[str]:
    """The other side of the order from user_id; admins get no counterparty"""
    seller_user_id = get_seller_user_id(session, order)
    if user_id == order.buyer_id:
        return seller_user_id
    if user_id == seller_user_id:
        return order.buyer_id
    return None
