from __future__ import annotations

import uuid

from ..extensions import db
from ..time_utils import utcnow, to_utc_z


def new_id() -> str:
    return str(uuid.uuid4())


class IdentityMixin:
    """
    Identity shape shared by every entity: opaque id plus timestamps.

    updated_at stays NULL until the first mutation; call touch() once per
    mutation. Equality between entities goes through same_entity(), never
    field-wise comparison.
    """
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=True)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def identity_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


def same_entity(left, right) -> bool:
    """Two entities are equal iff same concrete kind and same identifier."""
    if left is None or right is None:
        return False
    if type(left) is not type(right):
        return False
    return left.id is not None and left.id == right.id
