"""
Identifiers that registration calls only report through logs.

The layouts below are a compatibility contract with the deployed bridgehead and proof
system. Changing a signature or the position of a field is a breaking change and
must bump EVENT_LAYOUT_VERSION.

Version 1:

- ``NewChain(uint256 indexed chainId, address indexed chainContract, address indexed chainGovernance)``
  emitted by the bridgehead: topics[1] is the new chain id, topics[2] the chain proxy.
- ``NewProofChain(uint256 indexed chainId, address indexed proofChainContract)``
  emitted by the proof system: topics[1] is the chain id, topics[2] the diamond proxy.
"""

from typing import NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import event_signature_to_log_topic, to_checksum_address

from l1_deployment.chain import Log, Receipt
from l1_deployment.errors import DeploymentError

EVENT_LAYOUT_VERSION = 1

NEW_CHAIN_SIGNATURE = "NewChain(uint256,address,address)"
NEW_PROOF_CHAIN_SIGNATURE = "NewProofChain(uint256,address)"

NEW_CHAIN_TOPIC = event_signature_to_log_topic(NEW_CHAIN_SIGNATURE)
NEW_PROOF_CHAIN_TOPIC = event_signature_to_log_topic(NEW_PROOF_CHAIN_SIGNATURE)


class EventNotFound(DeploymentError):
    """The receipt does not carry the expected log."""


class NewChain(NamedTuple):
    chain_id: int
    chain_contract: ChecksumAddress


class NewProofChain(NamedTuple):
    chain_id: int
    diamond_proxy: ChecksumAddress


def _topic_to_address(topic: bytes) -> ChecksumAddress:
    return to_checksum_address(topic[-20:])


def _topic_to_int(topic: bytes) -> int:
    return int.from_bytes(topic, "big")


def find_log(
    receipt: Receipt, topic: bytes, emitter: Optional[ChecksumAddress] = None, min_topics: int = 1
) -> Log:
    for log in receipt.logs:
        if not log.topics or bytes(log.topics[0]) != topic:
            continue
        if emitter is not None and log.address.lower() != emitter.lower():
            continue
        if len(log.topics) < min_topics:
            raise EventNotFound(
                f"Log {topic.hex()} in {receipt.tx_hash} has {len(log.topics)} topics, "
                f"expected at least {min_topics} (layout version {EVENT_LAYOUT_VERSION})."
            )
        return log
    raise EventNotFound(f"No log with topic 0x{topic.hex()} in transaction {receipt.tx_hash}.")


def parse_new_chain(receipt: Receipt, bridgehead: Optional[ChecksumAddress] = None) -> NewChain:
    log = find_log(receipt, NEW_CHAIN_TOPIC, emitter=bridgehead, min_topics=3)
    return NewChain(
        chain_id=_topic_to_int(log.topics[1]),
        chain_contract=_topic_to_address(log.topics[2]),
    )


def parse_new_proof_chain(
    receipt: Receipt, proof_system: Optional[ChecksumAddress] = None
) -> NewProofChain:
    log = find_log(receipt, NEW_PROOF_CHAIN_TOPIC, emitter=proof_system, min_topics=3)
    return NewProofChain(
        chain_id=_topic_to_int(log.topics[1]),
        diamond_proxy=_topic_to_address(log.topics[2]),
    )
