from typing import Dict, NamedTuple, Optional, Tuple

from eth_abi import encode
from eth_typing import ChecksumAddress
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from l1_deployment.chain import ChainClient, PreparedTransaction, Receipt
from l1_deployment.constants import CREATE2_FACTORY_DEPLOY_SIGNATURE, DEFAULT_GAS_LIMIT
from l1_deployment.errors import AddressMismatch, DeploymentFailed, SaltReuse
from l1_deployment.registry import AddressRecord, AddressRegistry, ContractKind

FACTORY_DEPLOY_SELECTOR = function_signature_to_4byte_selector(CREATE2_FACTORY_DEPLOY_SIGNATURE)


def get_create2_address(
    factory_address: ChecksumAddress, salt: bytes, init_code_hash: bytes
) -> ChecksumAddress:
    """
    CREATE2 address derivation (EIP-1014):
    keccak256(0xff ++ factory ++ salt ++ keccak256(init_code))[12:]
    """
    if len(salt) != 32:
        raise ValueError(f"Salt must be 32 bytes, got {len(salt)}")
    preimage = b"\xff" + bytes.fromhex(factory_address[2:]) + salt + init_code_hash
    return to_checksum_address(keccak(preimage)[12:])


def encode_factory_deploy(init_code: bytes, salt: bytes) -> bytes:
    return FACTORY_DEPLOY_SELECTOR + encode(["bytes", "bytes32"], [init_code, salt])


class Create2Deployment(NamedTuple):
    """A contract bound to a salt and factory, with its address computed up front."""

    name: str
    init_code: bytes
    salt: bytes
    factory: ChecksumAddress
    predicted: ChecksumAddress
    kind: ContractKind = ContractKind.IMPLEMENTATION

    @property
    def init_code_hash(self) -> str:
        return "0x" + keccak(self.init_code).hex()


class DeterministicDeployer:
    """
    Deploys contracts through a CREATE2 factory.

    Deploying is idempotent: if code already exists at the predicted address the
    contract is recorded and no transaction is sent.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: AddressRegistry,
        factory_address: Optional[ChecksumAddress] = None,
        gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.client = client
        self.registry = registry
        self.factory_address = factory_address
        self.gas_limit = gas_limit
        self._salt_usage: Dict[Tuple[str, bytes], bytes] = dict()

    def predict(
        self,
        name: str,
        init_code: bytes,
        constructor_args: bytes,
        salt: bytes,
        kind: ContractKind = ContractKind.IMPLEMENTATION,
    ) -> Create2Deployment:
        if self.factory_address is None:
            raise ValueError("The CREATE2 factory address is not known yet.")
        full_init_code = init_code + constructor_args
        init_code_hash = keccak(full_init_code)

        # the same salt under the same name must always mean the same contract
        key = (name, salt)
        previous_hash = self._salt_usage.get(key)
        if previous_hash is not None and previous_hash != init_code_hash:
            raise SaltReuse(
                f"Salt 0x{salt.hex()} was already used for {name} with different "
                "init code or constructor arguments; the target address would silently change."
            )
        self._salt_usage[key] = init_code_hash

        predicted = get_create2_address(self.factory_address, salt, init_code_hash)
        return Create2Deployment(
            name=name,
            init_code=full_init_code,
            salt=salt,
            factory=self.factory_address,
            predicted=predicted,
            kind=kind,
        )

    def is_deployed(self, address: ChecksumAddress) -> bool:
        return len(self.client.get_code(address)) > 0

    def prepare(self, deployment: Create2Deployment) -> Optional[PreparedTransaction]:
        """Returns the factory transaction, or None when the contract is already live."""
        if self.is_deployed(deployment.predicted):
            print(f"(i) {deployment.name} already deployed at {deployment.predicted}.")
            self.registry.set(
                deployment.name,
                deployment.predicted,
                kind=deployment.kind,
                init_code_hash=deployment.init_code_hash,
            )
            return None
        return PreparedTransaction(
            to=deployment.factory,
            data=encode_factory_deploy(deployment.init_code, deployment.salt),
            gas_limit=self.gas_limit,
        )

    def complete(self, deployment: Create2Deployment, receipt: Receipt) -> AddressRecord:
        """Checks that the factory put code where predicted and records the address."""
        if not self.is_deployed(deployment.predicted):
            raise AddressMismatch(
                f"{deployment.name}: factory transaction {receipt.tx_hash} succeeded but no code "
                f"exists at the predicted address {deployment.predicted}."
            )
        record = AddressRecord(
            name=deployment.name,
            address=deployment.predicted,
            kind=deployment.kind,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            init_code_hash=deployment.init_code_hash,
        )
        self.registry.record(record)
        return record

    def check_recorded(self, deployment: Create2Deployment) -> None:
        """
        Fails when the recorded contract was built from different init code than
        ``deployment``. Entries recorded without an init code hash are compared by address.
        """
        entry = self.registry.entry(deployment.name)
        if entry.init_code_hash is not None:
            changed = entry.init_code_hash.lower() != deployment.init_code_hash
        else:
            changed = entry.address != deployment.predicted
        if changed:
            raise SaltReuse(
                f"{deployment.name} is recorded at {entry.address} from different init code or "
                f"constructor arguments than salt 0x{deployment.salt.hex()} now yields "
                f"({deployment.predicted}). Restore the original parameters or use a new salt "
                "and registry."
            )

    def deploy(
        self,
        name: str,
        init_code: bytes,
        constructor_args: bytes,
        salt: bytes,
        nonce: Optional[int] = None,
        gas_price: Optional[int] = None,
        kind: ContractKind = ContractKind.IMPLEMENTATION,
    ) -> ChecksumAddress:
        """Deploys a single contract and waits for it."""
        deployment = self.predict(name, init_code, constructor_args, salt, kind=kind)
        tx = self.prepare(deployment)
        if tx is None:
            return deployment.predicted

        if nonce is None:
            nonce = self.client.get_transaction_count(self.client.address)
        if gas_price is None:
            gas_price = self.client.get_gas_price()

        tx_hash = self.client.send_transaction(
            to=tx.to,
            data=tx.data,
            value=tx.value,
            nonce=nonce,
            gas_limit=tx.gas_limit,
            gas_price=gas_price,
        )
        receipt = self.client.wait(tx_hash)
        if not receipt.succeeded:
            reason = self.client.get_revert_reason(tx_hash)
            raise DeploymentFailed(name=name, reason=reason, tx_hash=tx_hash)

        self.complete(deployment, receipt)
        print(f"(i) {name} deployed at {deployment.predicted}, gas used: {receipt.gas_used}")
        return deployment.predicted
