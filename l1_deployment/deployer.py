from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from l1_deployment.artifacts import ArtifactSource
from l1_deployment.chain import ChainClient, PreparedTransaction, Receipt
from l1_deployment.confirm import _confirm_cut, _confirm_plan
from l1_deployment.constants import (
    CREATE2_FACTORY_CONTRACT,
    DIAMOND_INIT_PLACEHOLDERS,
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    EMPTY_BYTES32,
    PROOF_SYSTEM_FACETS,
    PROXY_CONTRACT,
    UNASSIGNED_CHAIN_ID,
    ZERO_ADDRESS,
)
from l1_deployment.create2 import Create2Deployment, DeterministicDeployer
from l1_deployment.diamond import DiamondCutData, FacetCut, TargetFacet, compute_cut
from l1_deployment.errors import AddressMismatch, ConfigurationError, DeploymentError
from l1_deployment.events import parse_new_chain, parse_new_proof_chain
from l1_deployment.orchestrator import DeploymentOrchestrator, DeploymentStep, StepAction
from l1_deployment.params import ConfigSource
from l1_deployment.registry import AddressRecord, AddressRegistry, ContractKind, registry_to_env
from l1_deployment.upgrade import UpgradeRegistrar
from l1_deployment.utils import validate_chain_id

CREATE2_FACTORY = "Create2Factory"
PROOF_SYSTEM_REGISTRATION = "ProofSystemRegistration"
HYPERCHAIN_REGISTRATION = "HyperchainRegistration"

# governor of the placeholder bridgehead chain
BRIDGEHEAD_CHAIN_PLACEHOLDER = "0x0000000000000000000000000000000000000001"

# Parameters every full deployment needs -> environment fallback for addresses
REQUIRED_CONSTANTS = {
    "PRIORITY_TX_MAX_GAS_LIMIT": None,
    "GENESIS_ROOT": None,
    "GENESIS_ROLLUP_LEAF_INDEX": None,
    "GENESIS_BLOCK_COMMITMENT": None,
    "L2_BOOTLOADER_BYTECODE_HASH": None,
    "L2_DEFAULT_ACCOUNT_BYTECODE_HASH": None,
    "RECURSION_NODE_LEVEL_VK_HASH": None,
    "RECURSION_LEAF_LEVEL_VK_HASH": None,
    "RECURSION_CIRCUITS_SET_VKS_HASH": None,
    "VALIDATOR_TIMELOCK_EXECUTION_DELAY": None,
    "WETH_TOKEN": "CONTRACTS_L1_WETH_TOKEN_ADDR",
    "VALIDATOR_ADDRESS": "ETH_SENDER_SENDER_OPERATOR_COMMIT_ETH_ADDR",
}

Args = Callable[[], List[Any]]


def _no_args() -> List[Any]:
    return []


class Create2Action(StepAction):
    """Deploys one contract through the CREATE2 factory; arguments are resolved lazily."""

    def __init__(
        self,
        create2: DeterministicDeployer,
        artifacts: ArtifactSource,
        name: str,
        contract_name: str,
        salt: bytes,
        args: Args = _no_args,
        kind: ContractKind = ContractKind.IMPLEMENTATION,
    ):
        self.create2 = create2
        self.artifacts = artifacts
        self.name = name
        self.contract_name = contract_name
        self.salt = salt
        self.args = args
        self.kind = kind
        self.deployment: Optional[Create2Deployment] = None

    def _predict(self) -> Create2Deployment:
        constructor_args = self.artifacts.encode_constructor_args(self.contract_name, self.args())
        self.deployment = self.create2.predict(
            name=self.name,
            init_code=self.artifacts.get_init_code(self.contract_name),
            constructor_args=constructor_args,
            salt=self.salt,
            kind=self.kind,
        )
        return self.deployment

    def prepare(self) -> Optional[PreparedTransaction]:
        return self.create2.prepare(self._predict())

    def complete(self, receipt: Optional[Receipt]) -> List[AddressRecord]:
        if receipt is None:
            return [
                AddressRecord(
                    self.name,
                    self.deployment.predicted,
                    self.kind,
                    init_code_hash=self.deployment.init_code_hash,
                )
            ]
        return [self.create2.complete(self.deployment, receipt)]

    def resume(self, receipt: Receipt) -> List[AddressRecord]:
        self._predict()
        return self.complete(receipt)

    def check_recorded(self) -> None:
        self.create2.check_recorded(self._predict())


class ProxyAction(Create2Action):
    """
    Deploys a transparent proxy through the factory. The proxy admin is whatever the
    EIP-1967 admin slot holds once the proxy exists; the implementation slot must hold
    the recorded ``implementation``.
    """

    def __init__(self, *args, implementation: str, admin_name: str, **kwargs):
        super().__init__(*args, kind=ContractKind.PROXY, **kwargs)
        self.implementation = implementation
        self.admin_name = admin_name

    def _read_slot(self, proxy: ChecksumAddress, slot: int, label: str) -> ChecksumAddress:
        value = bytes(self.create2.client.get_storage_at(proxy, slot))
        if value == EMPTY_BYTES32:
            raise DeploymentError(
                f"{label} slot for contract at {proxy} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?"
            )
        return to_checksum_address(value[-20:])

    def complete(self, receipt: Optional[Receipt]) -> List[AddressRecord]:
        records = super().complete(receipt)
        proxy = self.deployment.predicted

        implementation = self._read_slot(proxy, EIP1967_IMPLEMENTATION_SLOT, "Implementation")
        expected = self.create2.registry.get(self.implementation)
        if implementation != expected:
            raise AddressMismatch(
                f"{self.name} at {proxy} points to {implementation}, "
                f"expected {self.implementation} at {expected}."
            )

        admin = self._read_slot(proxy, EIP1967_ADMIN_SLOT, "Admin")
        records.append(AddressRecord(self.admin_name, admin, ContractKind.PROXY_ADMIN))
        return records


class FactoryCreationAction(StepAction):
    """Creates the CREATE2 factory itself with a plain contract-creation transaction."""

    def __init__(self, create2: DeterministicDeployer, artifacts: ArtifactSource):
        self.create2 = create2
        self.artifacts = artifacts

    def prepare(self) -> Optional[PreparedTransaction]:
        factory = self.create2.factory_address
        if factory is not None:
            if not self.create2.is_deployed(factory):
                raise ConfigurationError(f"No code at the configured CREATE2 factory {factory}.")
            print(f"(i) Using CREATE2 factory at {factory}.")
            return None
        return PreparedTransaction(
            to=None, data=self.artifacts.get_init_code(CREATE2_FACTORY_CONTRACT)
        )

    def complete(self, receipt: Optional[Receipt]) -> List[AddressRecord]:
        if receipt is None:
            return [AddressRecord(CREATE2_FACTORY, self.create2.factory_address)]
        if receipt.contract_address is None:
            raise DeploymentError(f"Factory creation {receipt.tx_hash} created no contract.")
        self.create2.factory_address = receipt.contract_address
        return [
            AddressRecord(
                name=CREATE2_FACTORY,
                address=receipt.contract_address,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
            )
        ]


class CallAction(StepAction):
    """A single contract call whose effects are read back from its receipt."""

    def __init__(
        self,
        target: Callable[[], ChecksumAddress],
        calldata: Callable[[], bytes],
        on_receipt: Callable[[Receipt], List[AddressRecord]],
    ):
        self.target = target
        self.calldata = calldata
        self.on_receipt = on_receipt

    def prepare(self) -> Optional[PreparedTransaction]:
        return PreparedTransaction(to=self.target(), data=self.calldata())

    def complete(self, receipt: Optional[Receipt]) -> List[AddressRecord]:
        return self.on_receipt(receipt)


class L1Deployer:
    """
    Deploys the L1 stack: bridgehead, proof system diamond, bridges and validator timelock.

    Every contract is deployed through the CREATE2 factory with the configured salt,
    so reruns with the same inputs land on the same addresses and skip whatever is
    already live.
    """

    def __init__(
        self,
        client: ChainClient,
        config: ConfigSource,
        artifacts: ArtifactSource,
        registry: Optional[AddressRegistry] = None,
        autosign: bool = False,
        verbose: bool = False,
    ):
        validate_chain_id(config.chain_id, client.chain_id)
        self.client = client
        self.config = config
        self.artifacts = artifacts
        self.autosign = autosign
        self.verbose = verbose
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")

        if registry is None:
            registry = AddressRegistry.load(
                filepath=config.registry_filepath,
                chain_id=config.chain_id,
                deployer=client.address,
            )
        self.registry = registry
        self.config.bind(deployer=client.address, registry=registry)

        factory = registry.get(CREATE2_FACTORY) if CREATE2_FACTORY in registry else None
        self.create2 = DeterministicDeployer(
            client=client,
            registry=registry,
            factory_address=factory or config.create2_factory,
            gas_limit=config.tx_options.gas_limit,
        )
        self.salt = config.salt

    #
    # Parameters
    #

    @property
    def governor(self) -> ChecksumAddress:
        if self.config.has("GOVERNOR"):
            return self.config.get_address("GOVERNOR")
        return self.client.address

    def validate_parameters(self) -> None:
        """Fails on a missing parameter before anything is sent."""
        missing = list()
        for name, env_name in REQUIRED_CONSTANTS.items():
            if self.config.has(name):
                continue
            if env_name and env_name in self.config.environ:
                continue
            missing.append(name)
        if missing:
            raise ConfigurationError(f"Missing deployment parameters: {', '.join(missing)}")

    def _address(self, name: str) -> ChecksumAddress:
        return self.config.get_address(name, env_name=REQUIRED_CONSTANTS.get(name))

    def _hash(self, name: str) -> bytes:
        return self.config.get_hash(name)

    #
    # Step builders
    #

    def _create2_step(
        self,
        name: str,
        contract_name: Optional[str] = None,
        args: Args = _no_args,
        dependencies: Iterable[str] = (),
    ) -> DeploymentStep:
        action = Create2Action(
            create2=self.create2,
            artifacts=self.artifacts,
            name=name,
            contract_name=contract_name or name,
            salt=self.salt,
            args=args,
        )
        return DeploymentStep(
            name=name,
            action=action,
            dependencies=frozenset({CREATE2_FACTORY, *dependencies}),
            outputs=(name,),
        )

    def _proxy_step(
        self,
        prefix: str,
        implementation: str,
        contract_name: str,
        initializer: Optional[Args] = None,
        dependencies: Iterable[str] = (),
    ) -> DeploymentStep:
        name = f"{prefix}Proxy"
        admin_name = f"{prefix}ProxyAdmin"

        def proxy_args() -> List[Any]:
            init_data = b""
            if initializer is not None:
                init_data = self.artifacts.encode_call(contract_name, "initialize", *initializer())
            return [self.registry.get(implementation), self.governor, init_data]

        action = ProxyAction(
            self.create2,
            self.artifacts,
            name=name,
            contract_name=PROXY_CONTRACT,
            salt=self.salt,
            args=proxy_args,
            implementation=implementation,
            admin_name=admin_name,
        )
        return DeploymentStep(
            name=name,
            action=action,
            dependencies=frozenset({CREATE2_FACTORY, implementation, *dependencies}),
            outputs=(name, admin_name),
        )

    def _governor_args(self) -> List[Any]:
        return [self.governor]

    def _bridgehead_chain_initializer(self) -> List[Any]:
        return [0, ZERO_ADDRESS, BRIDGEHEAD_CHAIN_PLACEHOLDER, self.registry.get("AllowList"), 0]

    def _bridgehead_initializer(self) -> List[Any]:
        return [
            self.governor,
            self.registry.get("BridgeheadChainImplementation"),
            self.registry.get("BridgeheadChainProxyAdmin"),
            self.registry.get("AllowList"),
            self.config.get_int("PRIORITY_TX_MAX_GAS_LIMIT"),
        ]

    def _proof_system_initializer(self) -> List[Any]:
        return [
            self.registry.get("BridgeheadProxy"),
            self.registry.get("Verifier"),
            self.governor,
            self._hash("GENESIS_ROOT"),
            self.config.get_int("GENESIS_ROLLUP_LEAF_INDEX"),
            self._hash("GENESIS_BLOCK_COMMITMENT"),
            self.registry.get("AllowList"),
            self._hash("L2_BOOTLOADER_BYTECODE_HASH"),
            self._hash("L2_DEFAULT_ACCOUNT_BYTECODE_HASH"),
            self.config.get_int("PRIORITY_TX_MAX_GAS_LIMIT"),
        ]

    def _register_proof_system(self) -> DeploymentStep:
        def calldata() -> bytes:
            return self.artifacts.encode_call(
                "Bridgehead", "newProofSystem", self.registry.get("ProofSystemProxy")
            )

        def on_receipt(receipt: Receipt) -> List[AddressRecord]:
            print(f"(i) Proof system registered, gas used: {receipt.gas_used}")
            return [
                AddressRecord(
                    name=PROOF_SYSTEM_REGISTRATION,
                    address=self.registry.get("ProofSystemProxy"),
                    kind=ContractKind.REGISTRATION,
                    tx_hash=receipt.tx_hash,
                    block_number=receipt.block_number,
                )
            ]

        action = CallAction(
            target=lambda: self.registry.get("BridgeheadProxy"),
            calldata=calldata,
            on_receipt=on_receipt,
        )
        return DeploymentStep(
            name=PROOF_SYSTEM_REGISTRATION,
            action=action,
            dependencies=frozenset({"BridgeheadProxy", "ProofSystemProxy"}),
            outputs=(PROOF_SYSTEM_REGISTRATION,),
        )

    def _register_hyperchain(self) -> DeploymentStep:
        def calldata() -> bytes:
            return self.artifacts.encode_call(
                "Bridgehead",
                "newChain",
                self.config.get_int("CHAIN_ID", UNASSIGNED_CHAIN_ID),
                self.registry.get("ProofSystemProxy"),
                self.governor,
                self.registry.get("AllowList"),
                self.initial_diamond_cut().as_abi(),
            )

        def on_receipt(receipt: Receipt) -> List[AddressRecord]:
            new_chain = parse_new_chain(receipt, self.registry.get("BridgeheadProxy"))
            proof_chain = parse_new_proof_chain(receipt, self.registry.get("ProofSystemProxy"))
            if new_chain.chain_id != proof_chain.chain_id:
                raise DeploymentError(
                    f"Bridgehead registered chain {new_chain.chain_id} but the proof system "
                    f"registered chain {proof_chain.chain_id}."
                )
            print(f"(i) Hyperchain registered, gas used: {receipt.gas_used}")
            print(f"CHAIN_ETH_ZKSYNC_NETWORK_ID={new_chain.chain_id}")
            return [
                AddressRecord(
                    "ChainProxy",
                    new_chain.chain_contract,
                    ContractKind.PROXY,
                    receipt.tx_hash,
                    receipt.block_number,
                ),
                AddressRecord(
                    "DiamondProxy",
                    proof_chain.diamond_proxy,
                    ContractKind.PROXY,
                    receipt.tx_hash,
                    receipt.block_number,
                ),
            ]

        action = CallAction(
            target=lambda: self.registry.get("BridgeheadProxy"),
            calldata=calldata,
            on_receipt=on_receipt,
        )
        return DeploymentStep(
            name=HYPERCHAIN_REGISTRATION,
            action=action,
            dependencies=frozenset({PROOF_SYSTEM_REGISTRATION, "DiamondInit", *PROOF_SYSTEM_FACETS}),
            outputs=("ChainProxy", "DiamondProxy"),
        )

    def build_steps(self) -> List[DeploymentStep]:
        """The full L1 stack, in declaration order."""
        steps = [
            DeploymentStep(
                name=CREATE2_FACTORY,
                action=FactoryCreationAction(self.create2, self.artifacts),
                outputs=(CREATE2_FACTORY,),
            ),
            self._create2_step("AllowList", args=self._governor_args),
            self._create2_step("Multicall3"),
            # Bridgehead
            self._create2_step("BridgeheadChainImplementation", "BridgeheadChain"),
            # placeholder chain; new chains reuse its implementation and proxy admin
            self._proxy_step(
                "BridgeheadChain",
                implementation="BridgeheadChainImplementation",
                contract_name="BridgeheadChain",
                initializer=self._bridgehead_chain_initializer,
                dependencies=("AllowList",),
            ),
            self._create2_step("BridgeheadImplementation", "Bridgehead"),
            # Proof system
            self._create2_step("Verifier"),
            *(self._create2_step(facet) for facet in PROOF_SYSTEM_FACETS),
            self._create2_step("DiamondInit"),
            self._create2_step("ProofSystemImplementation", "ProofSystem"),
            self._proxy_step(
                "Bridgehead",
                implementation="BridgeheadImplementation",
                contract_name="Bridgehead",
                initializer=self._bridgehead_initializer,
                dependencies=(
                    "BridgeheadChainImplementation",
                    "BridgeheadChainProxy",
                    "AllowList",
                ),
            ),
            self._proxy_step(
                "ProofSystem",
                implementation="ProofSystemImplementation",
                contract_name="ProofSystem",
                initializer=self._proof_system_initializer,
                dependencies=("BridgeheadProxy", "Verifier", "AllowList"),
            ),
            self._register_proof_system(),
            # Bridges
            self._create2_step(
                "ERC20BridgeImplementation",
                "L1ERC20Bridge",
                args=lambda: [self.registry.get("BridgeheadProxy"), self.registry.get("AllowList")],
                dependencies=("BridgeheadProxy", "AllowList"),
            ),
            self._proxy_step(
                "ERC20Bridge", implementation="ERC20BridgeImplementation", contract_name="L1ERC20Bridge"
            ),
            self._create2_step(
                "WethBridgeImplementation",
                "L1WethBridge",
                args=lambda: [
                    self._address("WETH_TOKEN"),
                    self.registry.get("BridgeheadProxy"),
                    self.registry.get("AllowList"),
                ],
                dependencies=("BridgeheadProxy", "AllowList"),
            ),
            self._proxy_step(
                "WethBridge", implementation="WethBridgeImplementation", contract_name="L1WethBridge"
            ),
            # Hyperchain
            self._register_hyperchain(),
            self._create2_step(
                "ValidatorTimelock",
                args=lambda: [
                    self.governor,
                    self.registry.get("DiamondProxy"),
                    self.config.get_int("VALIDATOR_TIMELOCK_EXECUTION_DELAY"),
                    self._address("VALIDATOR_ADDRESS"),
                ],
                dependencies=(HYPERCHAIN_REGISTRATION,),
            ),
        ]
        return steps

    def upgrade_steps(self, version: int, init_contract: Optional[str] = None) -> List[DeploymentStep]:
        """
        Versioned facets (``<Facet>V<version>``) and, optionally, the upgrade initializer:
        ``DiamondUpgradeInit`` deploys ``DiamondUpgradeInit<version>``, ``DefaultUpgrade``
        deploys ``ProofDefaultUpgrade``.
        """
        steps = [self._create2_step(f"{facet}V{version}", facet) for facet in PROOF_SYSTEM_FACETS]
        if init_contract is not None:
            name, contract_name = self._upgrade_init_names(version, init_contract)
            steps.append(self._create2_step(name, contract_name))
        return [
            DeploymentStep(
                name=CREATE2_FACTORY,
                action=FactoryCreationAction(self.create2, self.artifacts),
                outputs=(CREATE2_FACTORY,),
            ),
            *steps,
        ]

    @staticmethod
    def _upgrade_init_names(version: int, init_contract: str):
        if init_contract == "DiamondUpgradeInit":
            return f"DiamondUpgradeInit{version}", f"DiamondUpgradeInit{version}"
        if init_contract == "DefaultUpgrade":
            return f"DefaultUpgradeV{version}", "ProofDefaultUpgrade"
        raise ConfigurationError(f"Unknown upgrade initializer '{init_contract}'.")

    #
    # Diamond cuts
    #

    def _facet_targets(self, suffix: str = "") -> Dict[str, TargetFacet]:
        targets = dict()
        for facet, is_freezable in PROOF_SYSTEM_FACETS.items():
            targets[facet] = TargetFacet(
                address=self.registry.get(f"{facet}{suffix}"),
                selectors=self.artifacts.get_selectors(facet),
                is_freezable=is_freezable,
            )
        return targets

    def initial_diamond_cut(self) -> DiamondCutData:
        """Adds every proof system facet and runs DiamondInit.initialize."""
        cuts = compute_cut(dict(), self._facet_targets())
        verifier_params = (
            self._hash("RECURSION_NODE_LEVEL_VK_HASH"),
            self._hash("RECURSION_LEAF_LEVEL_VK_HASH"),
            self._hash("RECURSION_CIRCUITS_SET_VKS_HASH"),
        )
        init_calldata = self.artifacts.encode_call(
            "DiamondInit",
            "initialize",
            *DIAMOND_INIT_PLACEHOLDERS,
            self.registry.get("AllowList"),
            self.registry.get("Verifier"),
            verifier_params,
            self._hash("L2_BOOTLOADER_BYTECODE_HASH"),
            self._hash("L2_DEFAULT_ACCOUNT_BYTECODE_HASH"),
            self.config.get_int("PRIORITY_TX_MAX_GAS_LIMIT"),
        )
        return DiamondCutData(
            facet_cuts=tuple(cuts),
            init_address=self.registry.get("DiamondInit"),
            init_calldata=init_calldata,
        )

    #
    # Execution
    #

    def _print_deployment_info(self, pending: Sequence[Sequence[DeploymentStep]]):
        print(
            f"Account: {self.client.address}",
            f"Config: {self.config.path}",
            f"Registry: {self.registry.filepath}",
            f"Chain ID: {self.client.chain_id}",
            f"Governor: {self.governor}",
            f"Salt: 0x{self.salt.hex()}",
            f"CREATE2 factory: {self.create2.factory_address or '(to be deployed)'}",
            f"Recorded contracts: {len(self.registry)}",
            f"Broadcast, unconfirmed: {len(self.registry.pending())}",
            f"Pending groups: {len(pending)}",
            sep="\n",
        )

    def _orchestrate(self, steps: Sequence[DeploymentStep]) -> DeploymentOrchestrator:
        orchestrator = DeploymentOrchestrator(
            client=self.client,
            registry=self.registry,
            steps=steps,
            tx_options=self.config.tx_options,
        )
        groups = orchestrator.plan()
        self._print_deployment_info(groups)
        if not self.autosign:
            _confirm_plan(groups)
        orchestrator.run()
        return orchestrator

    def _print_env(self) -> None:
        if self.verbose:
            print("\n" + "\n".join(registry_to_env(self.registry)))

    def run(self) -> Dict[str, ChecksumAddress]:
        """Deploys (or resumes deploying) the whole stack. Returns the registry snapshot."""
        self.validate_parameters()
        print(f"\nDeploying {self.config.name}")
        self._orchestrate(self.build_steps())
        print(f"\n(i) Deployment complete; {len(self.registry)} contracts recorded.")
        self._print_env()
        return self.registry.snapshot()

    def upgrade_diamond(
        self,
        version: int,
        init_contract: Optional[str] = None,
        init_method: Optional[str] = None,
        init_args: Sequence[Any] = (),
        init_calldata: bytes = b"",
        diamond: Optional[ChecksumAddress] = None,
    ) -> Optional[Receipt]:
        """
        Deploys version ``version`` of the facets (and initializer), diffs them against
        the diamond's live routing and applies the resulting cut atomically.
        Returns None when the diamond already routes exactly the target facets.
        """
        orchestrator = self._orchestrate(self.upgrade_steps(version, init_contract))

        init_target = None
        if init_contract is not None:
            name, contract_name = self._upgrade_init_names(version, init_contract)
            init_target = self.registry.get(name)
            if init_method is not None:
                init_calldata = self.artifacts.encode_call(contract_name, init_method, *init_args)
        elif init_method is not None:
            raise ConfigurationError("An initializer method needs an initializer contract.")

        tx_options = self.config.tx_options
        if orchestrator.windows:
            tx_options = tx_options._replace(nonce=None)
        registrar = UpgradeRegistrar(
            client=self.client,
            diamond=diamond or self.registry.get("DiamondProxy"),
            tx_options=tx_options,
        )
        cuts: List[FacetCut] = registrar.prepare_upgrade(self._facet_targets(suffix=f"V{version}"))
        if not cuts and init_target is None:
            print("(i) Diamond already routes the target facets; nothing to upgrade.")
            return None

        if not self.autosign:
            _confirm_cut(cuts, init_target, bytes(init_calldata))
        receipt = registrar.apply_upgrade(cuts, init_target, init_calldata)
        self._print_env()
        return receipt
