from typing import Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from l1_deployment.artifacts import InMemoryArtifactSource
from l1_deployment.chain import ChainClient, Log, Receipt
from l1_deployment.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    PROXY_CONTRACT,
)
from l1_deployment.create2 import FACTORY_DEPLOY_SELECTOR, get_create2_address
from l1_deployment.diamond import DIAMOND_CUT_DATA_TYPE, LOUPE_FACETS_SELECTOR, FacetAction
from l1_deployment.events import NEW_CHAIN_TOPIC, NEW_PROOF_CHAIN_TOPIC
from l1_deployment.params import ConfigSource
from l1_deployment.registry import AddressRegistry
from l1_deployment.upgrade import DIAMOND_UPGRADE_SELECTOR

# Common constants
CHAIN_ID = 31337
DEPLOYER = to_checksum_address("0x" + "11" * 20)
FACTORY = to_checksum_address("0x" + "fa" * 20)
SALT = b"\x00" * 31 + b"\x01"
ASSIGNED_CHAIN_ID = 270
WETH = to_checksum_address("0x" + "ee" * 20)

NEW_CHAIN_SELECTOR = function_signature_to_4byte_selector(
    "newChain(uint256,address,address,address,((address,uint8,bool,bytes4[])[],address,bytes))"
)


# Utility functions
def address_topic(address: str) -> bytes:
    return b"\x00" * 12 + bytes.fromhex(address[2:])


def int_topic(value: int) -> bytes:
    return value.to_bytes(32, "big")


def fake_address(seed: bytes) -> str:
    return to_checksum_address(keccak(seed)[12:])


def _function(name: str, *types: str) -> Dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(types)],
        "outputs": [],
    }


def _tuple(*types: str, array: bool = False) -> Dict:
    return {
        "name": "",
        "type": "tuple[]" if array else "tuple",
        "components": [{"name": f"c{i}", "type": t} for i, t in enumerate(types)],
    }


def _constructor(*types: str) -> Dict:
    return {
        "type": "constructor",
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(types)],
    }


DIAMOND_CUT_ABI_INPUT = {
    "name": "_diamondCut",
    "type": "tuple",
    "components": [
        dict(_tuple("address", "uint8", "bool", "bytes4[]", array=True), name="facetCuts"),
        {"name": "initAddress", "type": "address"},
        {"name": "initCalldata", "type": "bytes"},
    ],
}

NEW_CHAIN_ABI = {
    "type": "function",
    "name": "newChain",
    "inputs": [
        {"name": "_chainId", "type": "uint256"},
        {"name": "_proofSystem", "type": "address"},
        {"name": "_governor", "type": "address"},
        {"name": "_allowList", "type": "address"},
        DIAMOND_CUT_ABI_INPUT,
    ],
    "outputs": [],
}

DIAMOND_INIT_ABI = {
    "type": "function",
    "name": "initialize",
    "inputs": [
        {"name": "a", "type": "address"},
        {"name": "b", "type": "address"},
        {"name": "c", "type": "address"},
        {"name": "d", "type": "bytes32"},
        {"name": "allowList", "type": "address"},
        {"name": "verifier", "type": "address"},
        dict(_tuple("bytes32", "bytes32", "bytes32"), name="verifierParams"),
        {"name": "bootloaderHash", "type": "bytes32"},
        {"name": "defaultAccountHash", "type": "bytes32"},
        {"name": "priorityTxMaxGasLimit", "type": "uint256"},
    ],
    "outputs": [],
}


def build_artifacts() -> Dict[str, Dict]:
    abis = {
        "SingletonFactory": [_function("deploy", "bytes", "bytes32")],
        "AllowList": [_constructor("address")],
        "Multicall3": [_function("aggregate3", "bytes")],
        "BridgeheadChain": [
            _function("initialize", "uint256", "address", "address", "address", "uint256")
        ],
        "Bridgehead": [
            _function("initialize", "address", "address", "address", "address", "uint256"),
            _function("newProofSystem", "address"),
            NEW_CHAIN_ABI,
        ],
        "Verifier": [_function("verify", "bytes")],
        "DiamondCutFacet": [
            {
                "type": "function",
                "name": "executeUpgrade",
                "inputs": [DIAMOND_CUT_ABI_INPUT],
                "outputs": [],
            },
            _function("freezeDiamond"),
            _function("getName"),
        ],
        "GettersFacet": [
            _function("facets"),
            _function("getVerifier"),
            _function("getGovernor"),
            _function("getName"),
        ],
        "ExecutorFacet": [
            _function("commitBatches", "bytes"),
            _function("executeBatches", "bytes"),
            _function("getName"),
        ],
        "GovernanceFacet": [
            _function("setPendingGovernor", "address"),
            _function("acceptGovernor"),
            _function("getName"),
        ],
        "DiamondInit": [DIAMOND_INIT_ABI],
        "ProofSystem": [
            _function(
                "initialize",
                "address",
                "address",
                "address",
                "bytes32",
                "uint256",
                "bytes32",
                "address",
                "bytes32",
                "bytes32",
                "uint256",
            )
        ],
        PROXY_CONTRACT: [_constructor("address", "address", "bytes")],
        "L1ERC20Bridge": [_constructor("address", "address")],
        "L1WethBridge": [_constructor("address", "address", "address")],
        "ValidatorTimelock": [_constructor("address", "address", "uint256", "address")],
        "DiamondUpgradeInit2": [_function("upgrade", "address")],
        "ProofDefaultUpgrade": [_function("upgrade", "bytes")],
    }
    return {
        name: {"abi": abi, "bytecode": "0x6080" + name.encode().hex()}
        for name, abi in abis.items()
    }


class FakeChain(ChainClient):
    """
    Mines every transaction as soon as it is broadcast. Nonces must be sent in order.
    """

    def __init__(self, address: str = DEPLOYER, chain_id: int = CHAIN_ID):
        self._address = to_checksum_address(address)
        self._chain_id = chain_id
        self.nonce = 0
        self.block_number = 0
        self.gas_price = 7
        self.code: Dict[str, bytes] = dict()
        self.storage: Dict[Tuple[str, int], bytes] = dict()
        self.transactions: List[Dict] = list()
        self.receipts: Dict[str, Receipt] = dict()
        self.revert_reasons: Dict[str, str] = dict()
        self.events: List[Tuple[str, object]] = list()
        # (predicate(to, data), reason)
        self.reverts: List[Tuple[Callable, str]] = list()
        self.broadcast_errors: List[Tuple[Callable, str]] = list()
        # selector -> handler(chain, to, data) -> logs
        self.tx_handlers: Dict[bytes, Callable] = dict()
        # selector -> handler(chain, to, data) -> return data
        self.view_handlers: Dict[bytes, Callable] = dict()
        # init code prefix -> hook(chain, address, init_code)
        self.creation_hooks: Dict[bytes, Callable] = dict()
        self.place_code = True

    @property
    def address(self):
        return self._address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def get_transaction_count(self, address) -> int:
        return self.nonce

    def get_code(self, address) -> bytes:
        return self.code.get(to_checksum_address(address), b"")

    def get_storage_at(self, address, slot: int) -> bytes:
        return self.storage.get((to_checksum_address(address), slot), b"\x00" * 32)

    def call(self, to, data: bytes) -> bytes:
        handler = self.view_handlers.get(bytes(data[:4]))
        if handler is None:
            raise ValueError(f"No view handler for 0x{bytes(data[:4]).hex()}")
        return handler(self, to_checksum_address(to), bytes(data))

    def get_gas_price(self) -> int:
        return self.gas_price

    def _create(self, address: str, init_code: bytes) -> None:
        if not self.place_code:
            return
        self.code[address] = init_code
        for prefix, hook in self.creation_hooks.items():
            if init_code.startswith(prefix):
                hook(self, address, init_code)

    def _execute(self, to, data: bytes, tx_hash: str) -> Tuple[List[Log], Optional[str]]:
        if to is None:
            address = fake_address(bytes.fromhex(self.address[2:]) + int_topic(self.nonce))
            self._create(address, data)
            return [], address
        to = to_checksum_address(to)
        selector = data[:4]
        if selector == FACTORY_DEPLOY_SELECTOR and to in self.code:
            init_code, salt = decode(["bytes", "bytes32"], data[4:])
            address = get_create2_address(to, salt, keccak(init_code))
            if address not in self.code:
                self._create(address, init_code)
            return [], None
        handler = self.tx_handlers.get(selector)
        if handler is not None:
            return handler(self, to, data), None
        return [], None

    def send_transaction(self, to, data, value, nonce, gas_limit, gas_price) -> str:
        data = bytes(data)
        for predicate, reason in self.broadcast_errors:
            if predicate(to, data):
                raise ValueError(reason)
        if nonce != self.nonce:
            raise ValueError(f"nonce {nonce} does not match the next nonce {self.nonce}")

        tx_hash = "0x" + keccak(int_topic(nonce) + data).hex()
        self.events.append(("send", nonce))
        self.transactions.append(
            dict(
                hash=tx_hash,
                to=to,
                data=data,
                value=value,
                nonce=nonce,
                gas=gas_limit,
                gas_price=gas_price,
            )
        )
        self.block_number += 1

        reason = next((r for predicate, r in self.reverts if predicate(to, data)), None)
        if reason is not None:
            logs, status, contract_address = [], 0, None
            self.revert_reasons[tx_hash] = reason
        else:
            logs, contract_address = self._execute(to, data, tx_hash)
            status = 1

        self.nonce += 1
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            status=status,
            logs=logs,
            gas_used=21000 + len(data),
            block_number=self.block_number,
            contract_address=contract_address,
        )
        return tx_hash

    def wait(self, tx_hash: str) -> Receipt:
        self.events.append(("wait", tx_hash))
        return self.receipts[tx_hash]

    def get_revert_reason(self, tx_hash: str) -> str:
        return self.revert_reasons[tx_hash]


class FakeDiamond:
    """Loupe and cut entry point of a diamond, installed on a FakeChain."""

    def __init__(self, chain: FakeChain, address: str, state: Optional[Dict] = None):
        self.address = to_checksum_address(address)
        self.state: Dict[str, set] = {k: set(v) for k, v in (state or dict()).items()}
        self.initializations: List[Tuple[str, bytes]] = list()
        chain.code[self.address] = b"\x60\x80diamond"
        chain.view_handlers[LOUPE_FACETS_SELECTOR] = self._facets
        chain.tx_handlers[DIAMOND_UPGRADE_SELECTOR] = self._execute_upgrade

    def _facets(self, chain, to, data) -> bytes:
        assert to == self.address
        facets = [(facet, sorted(selectors)) for facet, selectors in self.state.items() if selectors]
        return encode(["(address,bytes4[])[]"], [facets])

    def apply(self, facet_cuts, init_address, init_calldata) -> None:
        for facet, action, _freezable, selectors in facet_cuts:
            facet = to_checksum_address(facet)
            for selector in selectors:
                selector = bytes(selector)
                for owned in self.state.values():
                    owned.discard(selector)
                if action != FacetAction.REMOVE:
                    self.state.setdefault(facet, set()).add(selector)
        if int(init_address, 16) != 0:
            self.initializations.append((to_checksum_address(init_address), bytes(init_calldata)))

    def _execute_upgrade(self, chain, to, data) -> List[Log]:
        assert to == self.address
        (cut_data,) = decode([DIAMOND_CUT_DATA_TYPE], data[4:])
        self.apply(*cut_data)
        return []


def install_l1_handlers(chain: FakeChain, artifacts: Dict[str, Dict]) -> Dict:
    """Proxy slots and the bridgehead registration logs of a real deployment."""
    created = dict()
    proxy_bytecode = bytes.fromhex(artifacts[PROXY_CONTRACT]["bytecode"][2:])

    def proxy_hook(chain, address, init_code):
        logic, _owner, _data = decode(
            ["address", "address", "bytes"], init_code[len(proxy_bytecode) :]
        )
        chain.storage[(address, EIP1967_IMPLEMENTATION_SLOT)] = address_topic(
            to_checksum_address(logic)
        )
        # OZ5 proxies create their own admin
        chain.storage[(address, EIP1967_ADMIN_SLOT)] = address_topic(
            fake_address(b"admin" + bytes.fromhex(address[2:]))
        )

    def new_chain(chain, to, data):
        _, proof_system, governor, _, cut_data = decode(
            ["uint256", "address", "address", "address", DIAMOND_CUT_DATA_TYPE], data[4:]
        )
        chain_contract = fake_address(b"chain" + int_topic(ASSIGNED_CHAIN_ID))
        diamond = FakeDiamond(chain, fake_address(b"diamond" + int_topic(ASSIGNED_CHAIN_ID)))
        diamond.apply(*cut_data)
        created["diamond"] = diamond
        return [
            Log(
                address=to,
                topics=[
                    NEW_CHAIN_TOPIC,
                    int_topic(ASSIGNED_CHAIN_ID),
                    address_topic(chain_contract),
                    address_topic(governor),
                ],
                data=b"",
            ),
            Log(
                address=to_checksum_address(proof_system),
                topics=[
                    NEW_PROOF_CHAIN_TOPIC,
                    int_topic(ASSIGNED_CHAIN_ID),
                    address_topic(diamond.address),
                ],
                data=b"",
            ),
        ]

    chain.creation_hooks[proxy_bytecode] = proxy_hook
    chain.tx_handlers[NEW_CHAIN_SELECTOR] = new_chain
    return created


def l1_config(tmp_path, **overrides) -> Dict:
    zero_hash = "0x" + "00" * 32
    config = {
        "deployment": {"name": "test", "chain_id": CHAIN_ID},
        "artifacts": {"dir": str(tmp_path), "filename": "registry.json"},
        "create2": {"salt": "0x" + SALT.hex()},
        "constants": {
            "GOVERNOR": "$deployer",
            "PRIORITY_TX_MAX_GAS_LIMIT": 72000000,
            "GENESIS_ROOT": zero_hash,
            "GENESIS_ROLLUP_LEAF_INDEX": 1,
            "GENESIS_BLOCK_COMMITMENT": zero_hash,
            "L2_BOOTLOADER_BYTECODE_HASH": "0x" + "01" * 32,
            "L2_DEFAULT_ACCOUNT_BYTECODE_HASH": "0x" + "02" * 32,
            "RECURSION_NODE_LEVEL_VK_HASH": "0x" + "03" * 32,
            "RECURSION_LEAF_LEVEL_VK_HASH": "0x" + "04" * 32,
            "RECURSION_CIRCUITS_SET_VKS_HASH": zero_hash,
            "VALIDATOR_TIMELOCK_EXECUTION_DELAY": 0,
            "VALIDATOR_ADDRESS": "$deployer",
            "WETH_TOKEN": WETH,
        },
    }
    config.update(overrides)
    return config


# Fixtures
@pytest.fixture()
def chain():
    return FakeChain()


@pytest.fixture()
def factory_chain(chain):
    chain.code[FACTORY] = b"\x60\x80factory"
    return chain


@pytest.fixture()
def artifacts_data():
    return build_artifacts()


@pytest.fixture()
def artifacts(artifacts_data):
    return InMemoryArtifactSource(artifacts_data)


@pytest.fixture()
def registry(tmp_path):
    return AddressRegistry(chain_id=CHAIN_ID, filepath=tmp_path / "registry.json", deployer=DEPLOYER)


@pytest.fixture()
def config(tmp_path):
    return ConfigSource(config=l1_config(tmp_path), environ=dict())
