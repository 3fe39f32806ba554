"""Client for the account provisioning service (guest checkout accounts)."""
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class AccountProvisioningError(Exception):
    """Raised when an account could not be created or found."""

    pass


class AccountProvisioner:
    """
    Creates (or finds) a user account for a purchase email.

    The service answers ``201`` with the new account, or ``409`` with the
    existing one when the email is already registered. Both carry ``id``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def provision(self, email: str, name: Optional[str] = None) -> str:
        """
        Ensure an account exists for ``email``.

        Args:
            email: Customer email from the checkout
            name: Customer name, if known

        Returns:
            str: User reference of the new or existing account

        Raises:
            AccountProvisioningError: On transport errors or unexpected responses
        """
        try:
            response = await self._client.post(
                "/accounts", json={"email": email, "name": name, "source": "guest_checkout"}
            )
        except httpx.HTTPError as e:
            raise AccountProvisioningError(f"Account service unreachable: {e}") from e

        if response.status_code not in (200, 201, 409):
            raise AccountProvisioningError(
                f"Account service answered {response.status_code}: {response.text[:200]}"
            )

        user_ref = response.json().get("id")
        if not user_ref:
            raise AccountProvisioningError("Account service response has no id")

        logger.info(
            "account_provisioned",
            user_ref=user_ref,
            existing=response.status_code == 409,
        )
        return str(user_ref)

    async def aclose(self) -> None:
        await self._client.aclose()
