"""
Identity reconciliation.

Each request is resolved as snapshot -> plan -> apply -> re-fetch: the
matching records and everything linked to them are read once, the full set
of writes is computed by pure functions, the writes are applied, and the
response is built from a fresh read of the surviving cluster.
"""

import threading
from typing import Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel, Field

from contact_store import ContactStore
from db_models import Contact, ContactResponse, ContactUpdate, LinkPrecedence
from exceptions import IdentityConsistencyError

logger = structlog.get_logger()


class NewContact(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence


class PlannedUpdate(BaseModel):
    contact_id: int
    changes: ContactUpdate


class ResolutionPlan(BaseModel):
    primary_id: int
    new_contact: Optional[NewContact] = None
    updates: List[PlannedUpdate] = Field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.new_contact is None and not self.updates


def creation_order(contact: Contact):
    return (contact.createdAt, contact.id)


def find_primary(contacts: Iterable[Contact]) -> Contact:
    primaries = [c for c in contacts if c.is_primary]
    if not primaries:
        raise IdentityConsistencyError("No primary contact found in linked contacts")
    return min(primaries, key=creation_order)


def is_exact_duplicate(matches: Iterable[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    return any(c.email == email and c.phoneNumber == phone for c in matches)


def has_new_information(matches: List[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    new_email = email is not None and all(c.email != email for c in matches)
    new_phone = phone is not None and all(c.phoneNumber != phone for c in matches)
    return new_email or new_phone


def resolve_root(contact: Contact, by_id: Dict[int, Contact]) -> Contact:
    """Follow linkedId until a primary is reached.

    Normally one hop at most, but a merge interrupted halfway can leave
    secondaries pointing at a demoted primary.
    """
    seen = set()
    current = contact
    while not current.is_primary:
        if current.id in seen or current.linkedId not in by_id:
            raise IdentityConsistencyError(
                f"No primary contact reachable from contact {contact.id}"
            )
        seen.add(current.id)
        current = by_id[current.linkedId]
    return current


def plan_resolution(
    matches: List[Contact],
    component: List[Contact],
    email: Optional[str],
    phone: Optional[str],
) -> ResolutionPlan:
    by_id = {c.id: c for c in component}
    by_id.update((c.id, c) for c in matches)

    roots = {}
    for contact in matches:
        root = resolve_root(contact, by_id)
        roots[root.id] = root
    survivor = min(roots.values(), key=creation_order)

    plan = ResolutionPlan(primary_id=survivor.id)

    if not is_exact_duplicate(matches, email, phone) and has_new_information(matches, email, phone):
        plan.new_contact = NewContact(
            email=email,
            phoneNumber=phone,
            linkedId=survivor.id,
            linkPrecedence=LinkPrecedence.SECONDARY,
        )

    ordered = sorted(by_id.values(), key=creation_order)

    # Pass one: demote every other primary in the cluster.
    for contact in ordered:
        if contact.is_primary and contact.id != survivor.id:
            plan.updates.append(PlannedUpdate(
                contact_id=contact.id,
                changes=ContactUpdate(
                    linkedId=survivor.id,
                    linkPrecedence=LinkPrecedence.SECONDARY,
                ),
            ))

    # Pass two: re-point secondaries so link depth stays at one.
    for contact in ordered:
        if not contact.is_primary and contact.linkedId != survivor.id:
            plan.updates.append(PlannedUpdate(
                contact_id=contact.id,
                changes=ContactUpdate(linkedId=survivor.id),
            ))

    return plan


def _ordered_values(contacts: List[Contact], field: str, primary: Contact) -> List[str]:
    values = []
    primary_value = getattr(primary, field)
    if primary_value is not None:
        values.append(primary_value)
    for contact in contacts:
        value = getattr(contact, field)
        if value is not None and value not in values:
            values.append(value)
    return values


def build_contact_response(contacts: Iterable[Contact]) -> ContactResponse:
    contacts = sorted(contacts, key=creation_order)
    primary = find_primary(contacts)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=_ordered_values(contacts, "email", primary),
        phoneNumbers=_ordered_values(contacts, "phoneNumber", primary),
        secondaryContactIds=sorted(c.id for c in contacts if not c.is_primary),
    )


class IdentityResolver:
    """Applies resolution plans against a ContactStore.

    Calls to identify() are serialized so that two requests touching the
    same cluster cannot both read a snapshot before either writes.
    """

    def __init__(self, store: ContactStore):
        self.store = store
        self._lock = threading.Lock()

    def identify(self, email: Optional[str] = None, phone: Optional[str] = None) -> ContactResponse:
        with self._lock:
            return self._identify(email, phone)

    def _identify(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        log = logger.bind(email=email, phone=phone)

        matches = self.store.find_by_email_or_phone(email, phone)
        if not matches:
            contact = self.store.create(phone, email, None, LinkPrecedence.PRIMARY)
            log.info("Created primary contact", contact_id=contact.id)
            return build_contact_response([contact])

        component = self.load_component(c.id for c in matches)
        try:
            plan = plan_resolution(matches, component, email, phone)
        except IdentityConsistencyError:
            log.error("Matched contacts have no primary", match_ids=[c.id for c in matches])
            raise

        self.apply(plan, log)

        return build_contact_response(self.load_component([plan.primary_id]))

    def load_component(self, seed_ids: Iterable[int]) -> List[Contact]:
        """Collect every live contact reachable from seed_ids through links."""
        known = {}
        requested = set()
        pending = set(seed_ids)
        while pending:
            requested |= pending
            for contact in self.store.find_connected_component(pending):
                known[contact.id] = contact
            pending = set(known) - requested
        return sorted(known.values(), key=creation_order)

    def apply(self, plan: ResolutionPlan, log=logger) -> None:
        if plan.new_contact is not None:
            new = plan.new_contact
            contact = self.store.create(new.phoneNumber, new.email, new.linkedId, new.linkPrecedence)
            log.info("Created secondary contact", contact_id=contact.id, primary_id=new.linkedId)

        for update in plan.updates:
            self.store.update(update.contact_id, update.changes)

        if plan.updates:
            log.info(
                "Merged contact clusters",
                primary_id=plan.primary_id,
                relinked_ids=[u.contact_id for u in plan.updates],
            )
