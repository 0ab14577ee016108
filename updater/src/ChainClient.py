"""ChainClient: Async Web3 access to one chain.

Wraps the RPC primitives the updater needs (reads, fee history, estimation,
signed sends and receipt polling) and translates web3 errors into
:class:`RpcFailure` / :class:`SubmissionRejected`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from .errors import RpcFailure, SubmissionRejected
from .StalenessEvaluator import OnChainValue

if TYPE_CHECKING:
    from web3.contract import AsyncContract

    from .UpdaterConfig import ChainConfig

logger = logging.getLogger(__name__)


class ChainClient:
    """RPC client for a single chain.

    :ivar chain: Chain configuration.
    :ivar w3: Async Web3 instance.
    :ivar account: Signing account, or None for read-only use.
    """

    def __init__(
        self,
        chain: ChainConfig,
        private_key: str | None = None,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        """Initialize the chain client.

        :param chain: Chain configuration.
        :param private_key: Hex private key used to sign submissions.
        :param w3: Optional preconfigured AsyncWeb3 instance.
        """
        self.chain = chain
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))
        self.account: LocalAccount | None = (
            Account.from_key(private_key) if private_key else None
        )
        self._chain_id = chain.chain_id

        pyth_abi = self.get_abi("IPyth")
        self.pyth: AsyncContract = self.w3.eth.contract(address=chain.pyth_address, abi=pyth_abi)
        self.multicall: AsyncContract = self.w3.eth.contract(
            address=chain.multicall_address, abi=self.get_abi("Multicall3")
        )
        self.oracles: dict[str, AsyncContract] = {
            o.address: self.w3.eth.contract(address=o.address, abi=pyth_abi)
            for o in chain.oracles
        }

    @staticmethod
    def get_abi(contract_name: str) -> list:
        """Load a contract ABI from the packaged ``abi`` folder.

        :param contract_name: Name of the contract (e.g., "Multicall3").
        :returns: ABI list.
        """
        path = (Path(__file__).parent / "abi" / f"{contract_name}.json").resolve()
        with open(path, "r") as file:
            return json.load(file)["abi"]

    @property
    def address(self) -> str:
        if self.account is None:
            raise RpcFailure(f"[{self.chain.name}] No signing key configured")
        return self.account.address

    async def read_on_chain_value(self, feed_id: str) -> OnChainValue | None:
        """Read the stored price of a feed from the Pyth contract.

        :param feed_id: 0x-prefixed 32-byte price id.
        :returns: Stored value, or None if the feed was never written.
        :raises RpcFailure: On RPC errors.
        """
        try:
            price, _conf, expo, publish_time = await self.pyth.functions.getPriceUnsafe(
                bytes.fromhex(feed_id.removeprefix("0x"))
            ).call()
        except ContractLogicError:
            # Pyth reverts with PriceFeedNotFound for unknown ids
            return None
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] Failed to read {feed_id}: {e}") from e

        if publish_time == 0:
            return None
        return OnChainValue(price=price, expo=expo, publish_time=publish_time)

    async def historical_base_fees(self, block_count: int) -> list[int]:
        """Base fees of the most recent blocks."""
        history = await self._fee_history(block_count, [])
        # The last entry is the projected base fee of the next block
        return [int(f) for f in history["baseFeePerGas"][:-1] or history["baseFeePerGas"]]

    async def historical_priority_fees(self, block_count: int, percentile: int) -> list[int]:
        """Priority fees paid at ``percentile`` in the most recent blocks."""
        history = await self._fee_history(block_count, [percentile])
        return [int(r[0]) for r in history.get("reward") or [] if r]

    async def _fee_history(self, block_count: int, percentiles: list[int]) -> Any:
        try:
            return await self.w3.eth.fee_history(block_count, "latest", percentiles)
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] fee_history failed: {e}") from e

    async def gas_price(self) -> int:
        try:
            return await self.w3.eth.gas_price
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] gas_price failed: {e}") from e

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        """Estimate gas for a transaction.

        :raises SubmissionRejected: If the call would revert.
        :raises RpcFailure: On other RPC errors.
        """
        try:
            return await self.w3.eth.estimate_gas(tx)
        except ContractLogicError as e:
            raise SubmissionRejected(f"[{self.chain.name}] Update would revert: {e}") from e
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] estimate_gas failed: {e}") from e

    async def get_update_fee(self, oracle: str, update_data: Sequence[bytes]) -> int:
        """Ask an oracle contract for the fee of an update."""
        try:
            return await self.oracles[oracle].functions.getUpdateFee(list(update_data)).call()
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] getUpdateFee failed: {e}") from e

    def build_update_tx(self, calls: Sequence[tuple[str, int, list[bytes]]]) -> dict[str, Any]:
        """Bundle oracle updates into one Multicall3 transaction.

        :param calls: Tuples of (oracle address, fee in wei, update payloads).
        :returns: Unsigned transaction without gas fields.
        """
        aggregated = [
            (
                oracle,
                False,
                fee,
                AsyncWeb3.to_bytes(
                    hexstr=self.oracles[oracle].encode_abi("updatePriceFeeds", args=[payloads])
                ),
            )
            for oracle, fee, payloads in calls
        ]
        return {
            "from": self.address,
            "to": self.chain.multicall_address,
            "value": sum(fee for _, fee, _ in calls),
            "data": self.multicall.encode_abi("aggregate3Value", args=[aggregated]),
        }

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        """Sign and broadcast a transaction.

        :param tx: Transaction with gas fields filled in.
        :returns: Transaction hash (0x-prefixed hex).
        :raises SubmissionRejected: If the node rejects the transaction.
        :raises RpcFailure: On transport errors.
        """
        account = self.account
        if account is None:
            raise RpcFailure(f"[{self.chain.name}] No signing key configured")

        try:
            if self._chain_id is None:
                self._chain_id = await self.w3.eth.chain_id
            nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] Failed to prepare transaction: {e}") from e

        signed = account.sign_transaction({**tx, "nonce": nonce, "chainId": self._chain_id})
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3RPCError as e:
            raise SubmissionRejected(f"[{self.chain.name}] Transaction rejected: {e}") from e
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] send_raw_transaction failed: {e}") from e
        return AsyncWeb3.to_hex(tx_hash)

    async def get_confirmations(self, tx_hash: str) -> int | None:
        """Count confirmations of a transaction.

        :param tx_hash: Transaction hash.
        :returns: Confirmation depth (1 when just included), or None if not
            included yet.
        :raises SubmissionRejected: If the transaction reverted.
        :raises RpcFailure: On RPC errors.
        """
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] Receipt lookup failed: {e}") from e

        if receipt["status"] != 1:
            raise SubmissionRejected(f"[{self.chain.name}] Transaction {tx_hash} reverted")

        try:
            head = await self.w3.eth.block_number
        except Exception as e:
            raise RpcFailure(f"[{self.chain.name}] block_number failed: {e}") from e
        return max(0, head - receipt["blockNumber"] + 1)
