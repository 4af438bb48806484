import os
import typing
from abc import ABC, abstractmethod
from collections import namedtuple
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address
from hexbytes import HexBytes

from l1_deployment.constants import CONTRACT_ARTIFACTS_DIR, DEFAULT_GAS_LIMIT, ENV_VARIABLE_NAMES
from l1_deployment.errors import AddressNotFound, ConfigurationError
from l1_deployment.utils import _load_yaml, get_artifact_filepath, validate_config

if typing.TYPE_CHECKING:
    from l1_deployment.registry import AddressRegistry


class TxOptions(NamedTuple):
    """
    Recognized transaction options.

    gas_price: wei per gas; ``None`` queries the chain once per run.
    gas_limit: applied to every deployment transaction.
    nonce: first nonce of the first group; ``None`` reads the live transaction count.
    Later groups always re-read the live count.
    """

    gas_price: Optional[int] = None
    gas_limit: int = DEFAULT_GAS_LIMIT
    nonce: Optional[int] = None

    @classmethod
    def from_config(cls, config: Dict) -> "TxOptions":
        transaction = config.get("transaction") or dict()
        unknown = set(transaction) - set(cls._fields)
        if unknown:
            raise ConfigurationError(f"Unrecognized transaction options: {', '.join(sorted(unknown))}")
        gas_limit = transaction.get("gas_limit")
        return cls(
            gas_price=_optional_int(transaction.get("gas_price")),
            gas_limit=int(gas_limit) if gas_limit is not None else DEFAULT_GAS_LIMIT,
            nonce=_optional_int(transaction.get("nonce")),
        )


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def to_salt(value: Any) -> bytes:
    """Normalizes an operator-supplied salt to 32 bytes."""
    if isinstance(value, int):
        return value.to_bytes(32, "big")
    salt = bytes(HexBytes(value))
    if len(salt) != 32:
        raise ConfigurationError(f"Salt must be 32 bytes, got {len(salt)}.")
    return salt


class VariableContext:
    def __init__(
        self,
        constants: typing.Dict[str, Any] = None,
        deployer: Optional[ChecksumAddress] = None,
        registry: Optional["AddressRegistry"] = None,
    ):
        self.constants = constants or dict()
        self.deployer = deployer
        self.registry = registry


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    def __init__(self, context: VariableContext):
        self.context = context

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self) -> Any:
        if self.context.deployer is None:
            raise ConfigurationError("$deployer used but no deployer account is configured.")
        return self.context.deployer


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        self.constant_name = constant_name
        self.context = context

    @classmethod
    def is_constant(cls, value: str, context: VariableContext) -> bool:
        return value in context.constants

    def resolve(self) -> Any:
        return _resolve_param(
            _process_raw_value(self.context.constants[self.constant_name], self.context)
        )


class RegistryAddress(Variable):
    """An address recorded earlier in the run (or a previous run) under a registry name."""

    def __init__(self, name: str, context: VariableContext):
        self.name = name
        self.context = context

    def resolve(self) -> Any:
        if self.context.registry is None:
            raise ConfigurationError(f"${self.name} used but no registry is available.")
        return self.context.registry.get(self.name)


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable.lstrip(Variable.VARIABLE_PREFIX)
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount(context)
    elif Constant.is_constant(variable, context):
        return Constant(variable, context)
    else:
        return RegistryAddress(variable, context)


def _process_raw_value(value: Any, context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, context)

    return value


def _resolve_param(value: Any) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v) for v in value]

    if isinstance(value, Variable):
        return value.resolve()

    return value  # literally a value


class ConfigSource:
    """
    Named parameters for a deployment, read from a params YAML file.

    Lookups of absent parameters raise ConfigurationError. Addresses fall back to the
    ``CONTRACTS_*_ADDR`` environment variables written by previous deployments.
    """

    def __init__(
        self,
        config: Dict,
        path: Optional[Path] = None,
        environ: Optional[typing.Mapping[str, str]] = None,
    ):
        validate_config(config)
        self.config = config
        self.path = path
        self.environ = os.environ if environ is None else environ
        self.context = VariableContext(constants=config.get("constants") or dict())
        self.tx_options = TxOptions.from_config(config)

        # Little trick to expose constants as attributes (e.g., params.constants.FOO)
        constants = self.context.constants
        _Constants = namedtuple("_Constants", list(constants))
        self.constants = _Constants(**constants)

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "ConfigSource":
        config = _load_yaml(filepath)
        return cls(config=config, path=filepath, *args, **kwargs)

    def bind(self, deployer: ChecksumAddress, registry: "AddressRegistry") -> None:
        """Makes ``$deployer`` and ``$<RegistryName>`` resolvable."""
        self.context.deployer = deployer
        self.context.registry = registry

    @property
    def chain_id(self) -> int:
        return int(self.config["deployment"]["chain_id"])

    @property
    def name(self) -> str:
        return self.config["deployment"].get("name", "deployment")

    @property
    def registry_filepath(self) -> Path:
        return get_artifact_filepath(self.config)

    @property
    def contracts_dir(self) -> Path:
        """Directory holding the compiled contract artifacts."""
        artifact_config = self.config.get("artifacts") or dict()
        return Path(artifact_config.get("contracts", CONTRACT_ARTIFACTS_DIR))

    @property
    def upgrade_initializer(self) -> Tuple[Optional[str], List[Any]]:
        """Method name and resolved arguments of the upgrade initializer call, if any."""
        upgrade = self.config.get("upgrade") or dict()
        method = upgrade.get("method")
        args = _process_raw_value(list(upgrade.get("args") or []), self.context)
        try:
            return method, _resolve_param(args)
        except AddressNotFound as e:
            raise ConfigurationError(f"Upgrade initializer refers to an unrecorded contract: {e}")

    @property
    def salt(self) -> bytes:
        create2 = self.config.get("create2") or dict()
        if "salt" not in create2:
            raise ConfigurationError("create2.salt is not set in params file.")
        return to_salt(create2["salt"])

    @property
    def create2_factory(self) -> Optional[ChecksumAddress]:
        create2 = self.config.get("create2") or dict()
        factory = create2.get("factory") or self.environ.get(ENV_VARIABLE_NAMES["Create2Factory"])
        return to_checksum_address(factory) if factory else None

    def has(self, name: str) -> bool:
        return name in self.context.constants

    def get(self, name: str, default: Any = ...) -> Any:
        """Resolves a named constant, following ``$`` variables."""
        if name not in self.context.constants:
            if default is not ...:
                return default
            raise ConfigurationError(f"Constant '{name}' not found in deployment file.")
        try:
            return Constant(name, self.context).resolve()
        except AddressNotFound as e:
            raise ConfigurationError(f"Constant '{name}' refers to an unrecorded contract: {e}")

    def get_int(self, name: str, default: Any = ...) -> int:
        value = self.get(name, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Constant '{name}' is not an integer: {value!r}")

    def get_hash(self, name: str) -> bytes:
        value = self.get(name)
        try:
            result = bytes(HexBytes(value))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Constant '{name}' is not a hex value: {value!r}")
        if len(result) != 32:
            raise ConfigurationError(f"Constant '{name}' must be 32 bytes, got {len(result)}.")
        return result

    def get_address(self, name: str, env_name: Optional[str] = None) -> ChecksumAddress:
        if self.has(name):
            value = self.get(name)
        elif env_name and env_name in self.environ:
            value = self.environ[env_name]
        else:
            raise ConfigurationError(
                f"Address '{name}' not found in deployment file"
                + (f" or in the {env_name} environment variable." if env_name else ".")
            )
        if not is_address(value):
            raise ConfigurationError(f"'{name}' is not a valid address: {value!r}")
        return to_checksum_address(value)
