class IdentityError(Exception):
    """Base class for failures raised by the reconciliation core."""


class ContactNotFoundError(IdentityError):
    def __init__(self, contact_id: int):
        self.contact_id = contact_id
        super().__init__(f"Contact {contact_id} not found")


class IdentityConsistencyError(IdentityError):
    """A matched component has no reachable primary contact."""
