from abc import ABC, abstractmethod
from typing import List, NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

UNKNOWN_REVERT_REASON = "<could not extract the revert reason>"


class Log(NamedTuple):
    address: ChecksumAddress
    topics: List[bytes]
    data: bytes


class Receipt(NamedTuple):
    """The parts of a transaction receipt the deployment flow relies on."""

    tx_hash: str
    status: int
    logs: List[Log]
    gas_used: int
    block_number: int
    contract_address: Optional[ChecksumAddress] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(ABC):
    """
    Transaction submission, confirmation and state queries for a single signer.
    """

    @property
    @abstractmethod
    def address(self) -> ChecksumAddress:
        """Address of the signing account."""
        raise NotImplementedError

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_transaction_count(self, address: ChecksumAddress) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_code(self, address: ChecksumAddress) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_gas_price(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def send_transaction(
        self,
        to: Optional[ChecksumAddress],
        data: bytes,
        value: int,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        """Signs and broadcasts a transaction without waiting for it. Returns the tx hash."""
        raise NotImplementedError

    @abstractmethod
    def wait(self, tx_hash: str) -> Receipt:
        """Blocks until the transaction is mined."""
        raise NotImplementedError

    @abstractmethod
    def get_revert_reason(self, tx_hash: str) -> str:
        raise NotImplementedError


class Web3ChainClient(ChainClient):
    """
    ChainClient over a web3.py connection, signing locally with a private key.
    """

    def __init__(self, web3: Web3, account: LocalAccount, poll_timeout: float = 120):
        self.web3 = web3
        self.account = account
        self.poll_timeout = poll_timeout

    @classmethod
    def from_uri(cls, uri: str, private_key: str) -> "Web3ChainClient":
        web3 = Web3(Web3.HTTPProvider(uri))
        account = Account.from_key(private_key)
        return cls(web3=web3, account=account)

    @property
    def address(self) -> ChecksumAddress:
        return self.account.address

    @property
    def chain_id(self) -> int:
        return self.web3.eth.chain_id

    def get_transaction_count(self, address: ChecksumAddress) -> int:
        # pending, so that transactions still in the mempool from an
        # interrupted run are never re-used
        return self.web3.eth.get_transaction_count(address, "pending")

    def get_code(self, address: ChecksumAddress) -> bytes:
        return bytes(self.web3.eth.get_code(to_checksum_address(address)))

    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        return bytes(self.web3.eth.get_storage_at(to_checksum_address(address), slot))

    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        result = self.web3.eth.call({"to": to_checksum_address(to), "data": HexBytes(data)})
        return bytes(result)

    def get_gas_price(self) -> int:
        return self.web3.eth.gas_price

    def send_transaction(
        self,
        to: Optional[ChecksumAddress],
        data: bytes,
        value: int,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        tx = {
            "from": self.address,
            "data": HexBytes(data),
            "value": value,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }
        if to is not None:
            tx["to"] = to_checksum_address(to)
        signed = self.account.sign_transaction(tx)
        raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        tx_hash = self.web3.eth.send_raw_transaction(raw)
        return "0x" + bytes(tx_hash).hex()

    def wait(self, tx_hash: str) -> Receipt:
        while True:
            try:
                receipt = self.web3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.poll_timeout
                )
                break
            except TimeExhausted:
                # a stalled transaction keeps its nonce; abandoning it is never safe
                print(f"(i) Still waiting for {tx_hash}...")

        logs = [
            Log(
                address=to_checksum_address(log["address"]),
                topics=[bytes(topic) for topic in log["topics"]],
                data=bytes(HexBytes(log["data"])),
            )
            for log in receipt["logs"]
        ]
        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=tx_hash,
            status=receipt["status"],
            logs=logs,
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
            contract_address=to_checksum_address(contract_address) if contract_address else None,
        )

    def get_revert_reason(self, tx_hash: str) -> str:
        """Replays a mined transaction at its block's parent state to recover the reason."""
        tx = self.web3.eth.get_transaction(tx_hash)
        replay_tx = {
            "from": tx["from"],
            "value": tx["value"],
            "data": tx["input"],
            "gas": tx["gas"],
        }
        if tx.get("to"):
            replay_tx["to"] = tx["to"]
        try:
            self.web3.eth.call(replay_tx, tx["blockNumber"] - 1)
        except ContractLogicError as e:
            return e.args[0]
        except ValueError as e:
            data = e.args[0]
            if isinstance(data, dict):
                return data.get("message", UNKNOWN_REVERT_REASON)
            return str(data)
        return UNKNOWN_REVERT_REASON


class PreparedTransaction(NamedTuple):
    """A transaction ready for a nonce; ``to=None`` creates a contract."""

    to: Optional[ChecksumAddress]
    data: bytes
    value: int = 0
    gas_limit: Optional[int] = None
