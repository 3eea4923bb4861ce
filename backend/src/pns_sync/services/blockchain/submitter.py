"""Chain submission endpoint for sync jobs."""

from typing import Any, Protocol

import structlog
from eth_account import Account
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from pns_sync.abi import BRIDGE, get_contract_abi
from pns_sync.models.domain import ChainSide, WrapState
from pns_sync.models.record import RecordType
from pns_sync.models.sync_job import JobType
from pns_sync.services.blockchain.event_decoder import RECORD_TYPE_CODES, WRAP_STATE_CODES
from pns_sync.services.exceptions import (
    NonceConflictError,
    SubmissionError,
    SubmissionRejectedError,
    SupersededError,
)

logger = structlog.get_logger()

SUPERSEDED_PATTERNS = ("stale version", "superseded", "version too low", "staleversion")
NONCE_PATTERNS = ("nonce too low", "already known", "replacement transaction underpriced")
REJECTED_PATTERNS = ("execution reverted", "revert")


class ChainSubmitter(Protocol):
    """Write side of a chain.

    ``submit`` returns once the transaction is accepted by the node; finality
    is observed later by that chain's own scan loop.
    """

    async def submit(self, job_type: JobType, payload: dict[str, Any]) -> str: ...


def classify_submission_error(error: Exception) -> Exception:
    """Map a node or contract error onto the submission taxonomy."""
    message = str(error).lower()
    if any(p in message for p in SUPERSEDED_PATTERNS):
        return SupersededError(str(error))
    if any(p in message for p in NONCE_PATTERNS):
        return NonceConflictError(str(error))
    if any(p in message for p in REJECTED_PATTERNS):
        return SubmissionRejectedError(str(error))
    return SubmissionError(str(error))


def _b32(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def build_call_args(job_type: JobType, payload: dict[str, Any]) -> tuple[str, list[Any]]:
    """Translate a job payload into a bridge function name and arguments."""
    if job_type is JobType.MIRROR_DOMAIN:
        return "mirrorDomain", [
            _b32(payload["name_hash"]),
            payload["label"],
            AsyncWeb3.to_checksum_address(payload["owner"]),
            int(payload["expiration"]),
            int(payload["version"]),
        ]
    if job_type is JobType.UPSERT_RECORD:
        return "upsertRecord", [
            _b32(payload["name_hash"]),
            _b32(payload["key_hash"]),
            payload["key"],
            RECORD_TYPE_CODES.index(RecordType(payload["record_type"])),
            bytes.fromhex(payload["value"]),
            int(payload["version"]),
        ]
    if job_type is JobType.DELETE_RECORD:
        return "deleteRecord", [
            _b32(payload["name_hash"]),
            _b32(payload["key_hash"]),
            int(payload["version"]),
        ]
    if job_type is JobType.SET_WRAP_STATE:
        return "setWrapState", [
            _b32(payload["name_hash"]),
            WRAP_STATE_CODES.index(WrapState(payload["state"])),
            int(payload["version"]),
        ]
    if job_type is JobType.MARK_CHECKPOINT:
        return "markCheckpoint", [
            0 if ChainSide(payload["source_chain"]) is ChainSide.PRIMARY else 1,
            int(payload["block_number"]),
        ]
    raise ValueError(f"Unsupported job type: {job_type}")


class Web3Submitter:
    """Signs and sends bridge transactions without waiting for receipts."""

    def __init__(
        self,
        rpc_url: str,
        bridge_address: str,
        private_key: str,
        chain_name: str,
        gas_buffer: float = 1.2,
        request_timeout: float = 20.0,
    ):
        """
        Initialize submitter.

        Args:
            rpc_url: JSON-RPC endpoint of the target chain
            bridge_address: Registry bridge contract on the target chain
            private_key: Submitter wallet key (0x-prefixed hex)
            chain_name: Name used in logs
            gas_buffer: Multiplier applied to gas estimates (default: 1.2)
            request_timeout: HTTP timeout per RPC call in seconds
        """
        self.chain_name = chain_name
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.bridge_address = AsyncWeb3.to_checksum_address(bridge_address)
        self.contract = self.w3.eth.contract(
            address=self.bridge_address, abi=get_contract_abi(BRIDGE)
        )
        self.account = Account.from_key(private_key)
        self.gas_buffer = gas_buffer

        logger.info(
            "submitter.initialized",
            chain=chain_name,
            submitter_address=self.account.address,
            bridge_address=self.bridge_address,
            gas_buffer=gas_buffer,
        )

    async def submit(self, job_type: JobType, payload: dict[str, Any]) -> str:
        """
        Submit one job instruction to the bridge.

        Returns:
            Transaction hash (0x-prefixed hex string)

        Raises:
            SupersededError: Target already holds an equal or newer version
            SubmissionRejectedError: Simulation reverted for another reason
            NonceConflictError: Nonce already used
            SubmissionError: Any other submission failure
        """
        function_name, args = build_call_args(job_type, payload)
        call = getattr(self.contract.functions, function_name)(*args)

        try:
            # Estimation simulates the call, so stale versions surface here
            estimated_gas = await call.estimate_gas({"from": self.account.address})
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            transaction = await call.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "gas": int(estimated_gas * self.gas_buffer),
                    "chainId": await self.w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(transaction)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            error = classify_submission_error(e)
            logger.warning(
                "submitter.submission_failed",
                chain=self.chain_name,
                job_type=job_type.value,
                error_class=type(error).__name__,
                error=str(e)[:200],
            )
            raise error from e

        tx_hash_hex = "0x" + bytes(tx_hash).hex()
        logger.info(
            "submitter.transaction_submitted",
            chain=self.chain_name,
            job_type=job_type.value,
            tx_hash=tx_hash_hex,
            nonce=nonce,
        )
        return tx_hash_hex
