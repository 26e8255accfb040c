"""Request context dependencies.

Callers are authenticated upstream by the API gateway, which forwards the
payer's identity and the organizations they control as headers. Internal
service-to-service endpoints use a shared token instead.
"""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import settings
from billing.core.database import get_db
from billing.services.subscription_lifecycle import OrganizationRef

logger = logging.getLogger(__name__)


class GatewayOrganization(BaseModel):
    """One entry of the X-User-Organizations header."""

    id: uuid_pkg.UUID
    name: str | None = None
    email: str | None = None


_organizations_adapter = TypeAdapter(list[GatewayOrganization])


@dataclass
class PayerContext:
    """The authenticated payer and the organizations they control."""

    payer_id: uuid_pkg.UUID
    organizations: list[OrganizationRef]
    email: str | None = None

    def controls(self, organization_id: uuid_pkg.UUID) -> bool:
        return any(org.id == organization_id for org in self.organizations)


async def get_current_payer(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_organizations: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
) -> PayerContext:
    """Build the payer context from gateway headers. 401 if they are missing or malformed."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    try:
        payer_id = uuid_pkg.UUID(x_user_id)
        organizations = _organizations_adapter.validate_json(x_user_organizations or "[]")
    except (ValueError, PydanticValidationError):
        logger.warning("Rejected request with malformed identity headers")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid identity headers",
        ) from None

    return PayerContext(
        payer_id=payer_id,
        organizations=[OrganizationRef(id=o.id, name=o.name, email=o.email) for o in organizations],
        email=x_user_email,
    )


def verify_service_token(x_service_token: Annotated[str | None, Header()] = None) -> None:
    """Validate the X-Service-Token header against the configured secret."""
    if not settings.internal_service_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal service token not configured",
        )
    if x_service_token != settings.internal_service_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid service token",
        )


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentPayer = Annotated[PayerContext, Depends(get_current_payer)]
