from pathlib import Path

#
# Filesystem
#

DEPLOYMENT_DIR = Path(__file__).parent
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"
CONTRACT_ARTIFACTS_DIR = DEPLOYMENT_DIR.parent / "artifacts" / "contracts"

STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}

#
# Transactions
#

ZERO_ADDRESS = "0x" + "0" * 40
EMPTY_BYTES32 = b"\x00" * 32

# Applied to every deployment transaction unless overridden in the params file
DEFAULT_GAS_LIMIT = 10_000_000

# EIP1967 Admin slot - https://eips.ethereum.org/EIPS/eip-1967#admin-address
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103
# EIP1967 Implementation slot - https://eips.ethereum.org/EIPS/eip-1967#logic-contract-address
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC

#
# CREATE2 factory (EIP-2470 singleton factory interface)
#

CREATE2_FACTORY_CONTRACT = "SingletonFactory"
CREATE2_FACTORY_DEPLOY_SIGNATURE = "deploy(bytes,bytes32)"

#
# Contracts
#

PROXY_CONTRACT = "TransparentUpgradeableProxy"

# Never routed through a diamond
EXCLUDED_FACET_SIGNATURES = ("getName()",)

# Facets installed by the initial diamond cut -> freezable
PROOF_SYSTEM_FACETS = {
    "DiamondCutFacet": False,
    "GettersFacet": False,
    "ExecutorFacet": True,
    "GovernanceFacet": True,
}

#
# Registry name -> environment variable consumed by downstream tooling
#

ENV_VARIABLE_NAMES = {
    "Create2Factory": "CONTRACTS_CREATE2_FACTORY_ADDR",
    "AllowList": "CONTRACTS_L1_ALLOW_LIST_ADDR",
    "BridgeheadProxy": "CONTRACTS_BRIDGEHEAD_PROXY_ADDR",
    "BridgeheadImplementation": "CONTRACTS_BRIDGEHEAD_IMPL_ADDR",
    "BridgeheadProxyAdmin": "CONTRACTS_BRIDGEHEAD_PROXY_ADMIN_ADDR",
    "BridgeheadChainImplementation": "CONTRACTS_BRIDGEHEAD_CHAIN_IMPL_ADDR",
    "BridgeheadChainProxyAdmin": "CONTRACTS_BRIDGEHEAD_CHAIN_PROXY_ADMIN_ADDR",
    "ChainProxy": "CONTRACTS_BRIDGEHEAD_CHAIN_PROXY_ADDR",
    "ProofSystemProxy": "CONTRACTS_PROOF_SYSTEM_PROXY_ADDR",
    "ProofSystemImplementation": "CONTRACTS_PROOF_SYSTEM_IMPL_ADDR",
    "ProofSystemProxyAdmin": "CONTRACTS_PROOF_SYSTEM_PROXY_ADMIN_ADDR",
    "Verifier": "CONTRACTS_VERIFIER_ADDR",
    "GovernanceFacet": "CONTRACTS_GOVERNANCE_FACET_ADDR",
    "ExecutorFacet": "CONTRACTS_EXECUTOR_FACET_ADDR",
    "DiamondCutFacet": "CONTRACTS_DIAMOND_CUT_FACET_ADDR",
    "GettersFacet": "CONTRACTS_GETTERS_FACET_ADDR",
    "DiamondInit": "CONTRACTS_DIAMOND_INIT_ADDR",
    "DiamondProxy": "CONTRACTS_DIAMOND_PROXY_ADDR",
    "ERC20BridgeImplementation": "CONTRACTS_L1_ERC20_BRIDGE_IMPL_ADDR",
    "ERC20BridgeProxy": "CONTRACTS_L1_ERC20_BRIDGE_PROXY_ADDR",
    "WethBridgeImplementation": "CONTRACTS_L1_WETH_BRIDGE_IMPL_ADDR",
    "WethBridgeProxy": "CONTRACTS_L1_WETH_BRIDGE_PROXY_ADDR",
    "ValidatorTimelock": "CONTRACTS_VALIDATOR_TIMELOCK_ADDR",
    "Multicall3": "CONTRACTS_L1_MULTICALL3_ADDR",
}

#
# Environment
#

WEB3_PROVIDER_URI_ENVVAR = "WEB3_PROVIDER_URI"
DEPLOYER_PRIVATE_KEY_ENVVAR = "DEPLOYER_PRIVATE_KEY"

#
# Proof system initialisation
#

# Overwritten by the proof system when a chain is created
DIAMOND_INIT_PLACEHOLDERS = (
    "0x0000000000000000000000000000000000001234",
    "0x0000000000000000000000000000000000002234",
    "0x0000000000000000000000000000000000003234",
    EMPTY_BYTES32,
)

# Passed to newChain to let the bridgehead assign the chain id
UNASSIGNED_CHAIN_ID = 0
