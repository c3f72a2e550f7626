"""SUI ledger client: JSON-RPC with endpoint fallback."""
from __future__ import annotations

import logging
import ssl
from typing import Any, Awaitable, Callable

import aiohttp
import certifi

from ...config import ChainConfig
from ...errors import LedgerError
from ...models import LedgerAck, LoanData, Vault
from .parser import parse_liquidation_proceeds, parse_loan, parse_vault

logger = logging.getLogger(__name__)

# Signs base64 transaction bytes and returns the serialized signature.
Signer = Callable[[str], Awaitable[str]]


class SuiLedgerClient:
    """SUI blockchain ledger client with automatic endpoint fallback."""

    def __init__(self, config: ChainConfig, signer: Signer | None = None) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.package_id = config.package_id
        self.sender = config.sender
        self.gas_budget = config.gas_budget
        self.current_rpc_index = 0
        self._signer = signer

    async def rpc_call(self, method: str, params: list[Any]) -> dict[str, Any]:
        """Make RPC call with fallback to alternative endpoints."""
        if not self.endpoints:
            raise LedgerError("No RPC endpoints configured")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            raise LedgerError(f"RPC Error: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result", {})
            except Exception as e:
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

        raise LedgerError(f"All RPC endpoints failed. Last error: {last_error}")

    async def get_object(self, object_id: str) -> dict[str, Any]:
        """Get the data payload of an object, or {} if it does not exist."""
        result = await self.rpc_call(
            "sui_getObject",
            [object_id, {"showType": True, "showContent": True, "showOwner": True}],
        )
        if "error" in result:
            logger.debug("Object %s not available: %s", object_id, result["error"])
            return {}
        return result.get("data") or {}

    async def get_loan(self, loan_id: str) -> LoanData | None:
        data = await self.get_object(loan_id)
        return parse_loan(data) if data else None

    async def get_vault(self, vault_id: str) -> Vault | None:
        data = await self.get_object(vault_id)
        return parse_vault(data) if data else None

    async def submit_transaction(self, target: str, arguments: list[Any]) -> LedgerAck:
        """Build, sign and execute a Move call.

        Args:
            target: Fully qualified ``package::module::function``.
            arguments: Pure or object-id arguments for the call.
        """
        if self._signer is None or not self.sender:
            raise LedgerError("Transaction signing is not configured")

        try:
            package, module, function = target.split("::")
        except ValueError:
            raise LedgerError(f"Invalid Move call target: {target}") from None

        built = await self.rpc_call(
            "unsafe_moveCall",
            [self.sender, package, module, function, [], arguments, None, str(self.gas_budget)],
        )
        tx_bytes = built.get("txBytes")
        if not tx_bytes:
            raise LedgerError(f"Failed to build transaction for {target}")

        signature = await self._signer(tx_bytes)
        result = await self.rpc_call(
            "sui_executeTransactionBlock",
            [
                tx_bytes,
                [signature],
                {"showEffects": True, "showEvents": True},
                "WaitForLocalExecution",
            ],
        )

        status = result.get("effects", {}).get("status", {})
        if status.get("status") != "success":
            raise LedgerError(
                f"Transaction {target} failed: {status.get('error', 'unknown error')}"
            )

        digest = result.get("digest", "")
        logger.info("Executed %s: %s", target, digest)
        return LedgerAck(
            digest=digest,
            proceeds=parse_liquidation_proceeds(result.get("events", [])),
            raw=result,
        )

    async def liquidate(self, loan_id: str, executor: str) -> LedgerAck:
        logger.info("Submitting liquidation of loan %s for %s", loan_id, executor)
        return await self.submit_transaction(
            f"{self.package_id}::liquidation::liquidate", [loan_id, executor]
        )
