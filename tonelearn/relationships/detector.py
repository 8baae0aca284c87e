"""Recipient relationship classification."""

import logging
from abc import ABC, abstractmethod
from typing import Any

from tonelearn.pipeline.models import RelationshipClassification

logger = logging.getLogger(__name__)

# Freemail / personal domains
PERSONAL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "aol.com", "icloud.com", "me.com", "mac.com", "live.com",
    "msn.com", "protonmail.com", "proton.me", "hey.com",
    "fastmail.com", "zoho.com", "yandex.com", "mail.com",
    "gmx.com", "gmx.net",
})

DEFAULT_RELATIONSHIP = "external"


class RelationshipDetector(ABC):
    """Classifies how the account owner relates to a recipient."""

    @abstractmethod
    async def detect(
        self,
        user_id: str,
        recipient_email: str,
        subject: str | None = None,
        context_hints: dict[str, Any] | None = None,
    ) -> RelationshipClassification:
        """Classify the relationship to ``recipient_email``.

        Args:
            user_id: Account owner.
            recipient_email: Address being written to.
            subject: Optional subject line.
            context_hints: Optional signals from feature extraction
                (``formality_score``, ``has_intimacy_markers``,
                ``has_professional_markers``, ``familiarity_level``).

        Returns:
            The classification.
        """


class DomainRelationshipDetector(RelationshipDetector):
    """Heuristic detector using known contacts, domains and text hints.

    Args:
        user_domains: Domains the account owner works under. Recipients on
            one of these are colleagues.
        known_contacts: Authoritative address → relationship type labels.
    """

    def __init__(
        self,
        user_domains: list[str] | None = None,
        known_contacts: dict[str, str] | None = None,
    ) -> None:
        self._user_domains = {d.lower() for d in user_domains or []}
        self._known_contacts = {
            address.lower(): label for address, label in (known_contacts or {}).items()
        }

    def add_known_contact(self, address: str, relationship_type: str) -> None:
        self._known_contacts[address.lower()] = relationship_type

    async def detect(
        self,
        user_id: str,
        recipient_email: str,
        subject: str | None = None,
        context_hints: dict[str, Any] | None = None,
    ) -> RelationshipClassification:
        email = (recipient_email or "").strip().lower()
        hints = context_hints or {}

        known = self._known_contacts.get(email)
        if known:
            return RelationshipClassification(
                type=known, confidence=0.95, detection_method="known_contact"
            )

        domain = email.rsplit("@", 1)[1] if "@" in email else ""
        raw_formality = hints.get("formality_score")
        formality = float(raw_formality) if raw_formality is not None else 0.5
        intimate = bool(hints.get("has_intimacy_markers"))
        professional = bool(hints.get("has_professional_markers"))

        if domain and domain in self._user_domains:
            return RelationshipClassification(
                type="colleague", confidence=0.9, detection_method="domain_heuristic"
            )

        if domain in PERSONAL_DOMAINS:
            if intimate:
                return RelationshipClassification(
                    type="spouse", confidence=0.6, detection_method="context_hints"
                )
            if professional or formality >= 0.7:
                return RelationshipClassification(
                    type="professional", confidence=0.6, detection_method="context_hints"
                )
            return RelationshipClassification(
                type="friend", confidence=0.7, detection_method="domain_heuristic"
            )

        if professional or formality >= 0.6:
            return RelationshipClassification(
                type="professional", confidence=0.7, detection_method="context_hints"
            )

        if not domain:
            logger.debug(
                "Recipient has no resolvable domain, using default relationship",
                extra={"user_id": user_id, "recipient_email": recipient_email},
            )

        return RelationshipClassification(
            type=DEFAULT_RELATIONSHIP, confidence=0.5, detection_method="domain_heuristic"
        )
