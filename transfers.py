"""Token transfer client for the distributor wallet's signer service."""

from decimal import Decimal
from typing import Optional, Protocol

import httpx

from errors import InsufficientFundsError, TransferError, TransferTimeoutError
from logging_config import get_logger

logger = get_logger(__name__)


class TransferService(Protocol):
    def transfer(self, to: str, amount: Decimal, reference: str) -> str:
        """send `amount` to `to`, return the tx hash."""
        ...

    def find_transfer(self, reference: str) -> Optional[str]:
        """tx hash of a transfer previously submitted under `reference`, if it landed."""
        ...

    def balance(self) -> Decimal:
        """distributable balance of the distributor wallet."""
        ...


class HttpTransferClient:
    """
    Client for the signer service that holds the distributor key.

    The service is called with a per-leg `reference` so a transfer whose
    response was lost can be looked up later instead of being sent twice.
    Every call is bounded by `timeout`; a timeout raises TransferTimeoutError
    and leaves the outcome unknown.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float,
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
        )

    def close(self) -> None:
        self.client.close()

    def transfer(self, to: str, amount: Decimal, reference: str) -> str:
        try:
            response = self.client.post(
                "/transfers",
                json={"to": to, "amount": f"{amount:.6f}", "reference": reference},
            )
        except httpx.TimeoutException as e:
            logger.warning("transfer_timeout", reference=reference, to=to)
            raise TransferTimeoutError(f"Transfer {reference} timed out", reference=reference) from e
        except httpx.HTTPError as e:
            logger.warning("transfer_request_failed", reference=reference, error=str(e))
            raise TransferError(f"Transfer {reference} failed: {e}") from e

        body = _json(response)
        if response.status_code == 402 or body.get("error") == "insufficient_funds":
            raise InsufficientFundsError(f"Insufficient funds for transfer {reference}")
        if response.status_code == 409:
            # reference already submitted; the earlier send decides the outcome
            logger.info("transfer_reference_conflict", reference=reference)
            tx_hash = self.find_transfer(reference)
            if tx_hash is None:
                raise TransferTimeoutError(f"Transfer {reference} already submitted, outcome unknown", reference=reference)
            return tx_hash
        if response.status_code >= 400:
            message = body.get("error") or response.text or f"HTTP {response.status_code}"
            raise TransferError(f"Transfer {reference} rejected: {message}")

        tx_hash = body.get("txHash")
        if not tx_hash:
            raise TransferError(f"Transfer {reference} returned no tx hash")
        logger.info("transfer_sent", reference=reference, to=to, amount=str(amount), tx_hash=tx_hash)
        return tx_hash

    def find_transfer(self, reference: str) -> Optional[str]:
        try:
            response = self.client.get(f"/transfers/{reference}")
        except httpx.TimeoutException as e:
            raise TransferTimeoutError(f"Lookup of {reference} timed out", reference=reference) from e
        except httpx.HTTPError as e:
            raise TransferError(f"Lookup of {reference} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransferError(f"Lookup of {reference} failed: HTTP {response.status_code}")

        body = _json(response)
        if body.get("status") == "failed":
            return None
        return body.get("txHash")

    def balance(self) -> Decimal:
        try:
            response = self.client.get("/balance")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransferError(f"Balance query failed: {e}") from e
        return Decimal(str(_json(response).get("balance", "0")))


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
