"""
Contact directory - read-only phone number lookup.

Contacts are created by the contact-management flow. The intake pipeline only
needs one question answered: which contact (and which owning user) does this
phone number belong to?
"""

from dataclasses import dataclass
from typing import Optional
from sqlalchemy.orm import Session
from intake_api.db.models import Contact
from intake_api.services.phone import (
    digits_only,
    last_ten_digits,
    normalize_phone,
    phone_variants,
)
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactMatch:
    """Identity of a contact as seen by the intake pipeline."""
    contact_id: int
    user_id: Optional[int]
    phone_number: str
    first_name: Optional[str] = None


class ContactDirectory:
    """
    Service class for phone-to-contact lookups.
    """

    def __init__(self, db: Session):
        """
        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    def find_by_phone(self, phone_number: Optional[str]) -> Optional[ContactMatch]:
        """
        Find the contact that owns a phone number.

        Tries, in order:
        1. exact match on every normalized variant (canonical, digits-only,
           with and without "+", with and without the "1" country code)
        2. last-10-digit comparison against stored numbers, for rows saved
           with formatting like "(555) 123-4567"

        Args:
            phone_number: Number in any format

        Returns:
            ContactMatch if exactly one contact matches, None otherwise
        """
        variants = phone_variants(phone_number)
        if not variants:
            return None

        contact = (
            self.db.query(Contact)
            .filter(Contact.phone_number.in_(variants))
            .order_by(Contact.id.asc())
            .first()
        )
        if contact:
            logger.debug(f"Exact phone match for {variants[0]}: contact {contact.id}")
            return self._to_match(contact)

        target = last_ten_digits(normalize_phone(phone_number))
        if target is None:
            return None

        # Narrow the scan to rows ending in the same last digit
        candidates = (
            self.db.query(Contact)
            .filter(Contact.phone_number.like(f"%{target[-1]}"))
            .order_by(Contact.id.asc())
            .all()
        )
        matches = [c for c in candidates if last_ten_digits(digits_only(c.phone_number)) == target]

        if len(matches) > 1:
            logger.warning(
                f"Phone {variants[0]} matches {len(matches)} contacts on last 10 digits; refusing to guess"
            )
            return None
        if matches:
            logger.info(f"Last-10-digit phone match for {variants[0]}: contact {matches[0].id}")
            return self._to_match(matches[0])

        return None

    def get(self, contact_id: int) -> Optional[ContactMatch]:
        """Look up a contact by id."""
        contact = self.db.get(Contact, contact_id)
        return self._to_match(contact) if contact else None

    @staticmethod
    def _to_match(contact: Contact) -> ContactMatch:
        return ContactMatch(
            contact_id=contact.id,
            user_id=contact.user_id,
            phone_number=contact.phone_number,
            first_name=contact.first_name,
        )
