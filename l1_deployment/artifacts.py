import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from eth_abi import encode, is_encodable
from eth_utils import (
    collapse_if_tuple,
    function_abi_to_4byte_selector,
    function_signature_to_4byte_selector,
)
from hexbytes import HexBytes

from l1_deployment.constants import EXCLUDED_FACET_SIGNATURES
from l1_deployment.errors import ConfigurationError

ABI = List[Dict[str, Any]]


def _abi_types(inputs: List[Dict]) -> List[str]:
    return [collapse_if_tuple(abi_input) for abi_input in inputs]


def _validate_args(name: str, abi_inputs: List[Dict], args: Sequence[Any]) -> None:
    """Validates call arguments against the ABI inputs."""
    if len(abi_inputs) != len(args):
        raise ConfigurationError(
            f"Parameters length mismatch - {name} ABI requires {len(abi_inputs)}, Got {len(args)}."
        )
    for position, (abi_input, value) in enumerate(zip(abi_inputs, args)):
        abi_type = collapse_if_tuple(abi_input)
        if not is_encodable(abi_type, value):
            raise ConfigurationError(
                f"{name} parameter '{abi_input.get('name')}' at position {position} has a value "
                f"'{value}' whose type does not match expected ABI type '{abi_type}'"
            )


def encode_constructor_args(abi: ABI, args: Sequence[Any]) -> bytes:
    """ABI-encodes constructor arguments (without the creation bytecode)."""
    constructors = [entry for entry in abi if entry.get("type") == "constructor"]
    inputs = constructors[0].get("inputs", []) if constructors else []
    _validate_args("constructor", inputs, args)
    if not inputs:
        return b""
    return encode(_abi_types(inputs), list(args))


def encode_function_call(abi: ABI, method_name: str, args: Sequence[Any]) -> bytes:
    """ABI-encodes a function call: 4-byte selector followed by the arguments."""
    candidates = [
        entry
        for entry in abi
        if entry.get("type") == "function"
        and entry.get("name") == method_name
        and len(entry.get("inputs", [])) == len(args)
    ]
    if not candidates:
        raise ConfigurationError(
            f"Could not find ABI for '{method_name}' with {len(args)} arg(s)"
        )
    function_abi = candidates[0]
    inputs = function_abi.get("inputs", [])
    _validate_args(method_name, inputs, args)
    selector = function_abi_to_4byte_selector(function_abi)
    return selector + encode(_abi_types(inputs), list(args))


def get_selectors(abi: ABI, exclude: Sequence[str] = EXCLUDED_FACET_SIGNATURES) -> FrozenSet[bytes]:
    """Returns the 4-byte selectors of every function in an ABI."""
    excluded = {function_signature_to_4byte_selector(signature) for signature in exclude}
    selectors = set()
    for entry in abi:
        if entry.get("type") != "function":
            continue
        selector = function_abi_to_4byte_selector(entry)
        if selector in excluded:
            continue
        selectors.add(selector)
    return frozenset(selectors)


class ArtifactSource(ABC):
    """Compiled contract data, looked up by contract name."""

    @abstractmethod
    def get_abi(self, contract_name: str) -> ABI:
        raise NotImplementedError

    @abstractmethod
    def get_init_code(self, contract_name: str) -> bytes:
        raise NotImplementedError

    def get_selectors(self, contract_name: str) -> FrozenSet[bytes]:
        return get_selectors(self.get_abi(contract_name))

    def encode_constructor_args(self, contract_name: str, args: Sequence[Any]) -> bytes:
        return encode_constructor_args(self.get_abi(contract_name), args)

    def encode_call(self, contract_name: str, method_name: str, *args) -> bytes:
        return encode_function_call(self.get_abi(contract_name), method_name, args)


class FileArtifactSource(ArtifactSource):
    """
    Reads hardhat (``bytecode`` as hex string) or foundry (``bytecode.object``)
    artifact JSON files named ``<ContractName>.json`` anywhere below the given directories.
    """

    def __init__(self, *directories: Path):
        self.directories = [Path(directory) for directory in directories]
        self._cache: Dict[str, Dict] = dict()

    def _find(self, contract_name: str) -> Optional[Path]:
        for directory in self.directories:
            for filepath in sorted(directory.rglob(f"{contract_name}.json")):
                if filepath.name.endswith(".dbg.json"):
                    continue
                return filepath
        return None

    def _load(self, contract_name: str) -> Dict:
        if contract_name not in self._cache:
            filepath = self._find(contract_name)
            if filepath is None:
                raise ConfigurationError(f"No contract artifact found with name '{contract_name}'.")
            with open(filepath, "r") as file:
                self._cache[contract_name] = json.load(file)
        return self._cache[contract_name]

    def get_abi(self, contract_name: str) -> ABI:
        return self._load(contract_name)["abi"]

    def get_init_code(self, contract_name: str) -> bytes:
        bytecode = self._load(contract_name)["bytecode"]
        if isinstance(bytecode, dict):
            bytecode = bytecode["object"]
        if not bytecode or bytecode == "0x":
            raise ConfigurationError(f"Artifact for '{contract_name}' has no bytecode (abstract?).")
        return bytes(HexBytes(bytecode))


class InMemoryArtifactSource(ArtifactSource):
    """Artifacts supplied directly as ``name -> {"abi": ..., "bytecode": ...}``."""

    def __init__(self, artifacts: Dict[str, Dict]):
        self.artifacts = artifacts

    def _get(self, contract_name: str) -> Dict:
        try:
            return self.artifacts[contract_name]
        except KeyError:
            raise ConfigurationError(f"No contract artifact found with name '{contract_name}'.")

    def get_abi(self, contract_name: str) -> ABI:
        return self._get(contract_name)["abi"]

    def get_init_code(self, contract_name: str) -> bytes:
        return bytes(HexBytes(self._get(contract_name)["bytecode"]))
