import json
import shutil
from collections import OrderedDict, defaultdict
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from l1_deployment.constants import (
    ENV_VARIABLE_NAMES,
    STANDARD_REGISTRY_JSON_FORMAT,
    ZERO_ADDRESS,
)
from l1_deployment.errors import AddressNotFound, ConfigurationError, RegistryConflict
from l1_deployment.utils import _load_json

ChainId = int
ContractName = str


class ContractKind(str, Enum):
    IMPLEMENTATION = "implementation"
    PROXY = "proxy"
    PROXY_ADMIN = "proxy_admin"
    # an on-chain registration (e.g. of the proof system in the bridgehead); the address
    # is the registered contract
    REGISTRATION = "registration"
    # a broadcast transaction whose receipt was never processed; keyed by step name
    PENDING = "pending"


class AddressRecord(NamedTuple):
    """A logical contract name and where it lives, as produced by a deployment step."""

    name: ContractName
    address: ChecksumAddress
    kind: ContractKind = ContractKind.IMPLEMENTATION
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    # keccak of the full CREATE2 init code, hex
    init_code_hash: Optional[str] = None


class RegistryEntry(NamedTuple):
    """Represents a single entry in a contract registry file."""

    chain_id: ChainId
    name: ContractName
    address: ChecksumAddress
    kind: ContractKind
    tx_hash: Optional[str]
    block_number: Optional[int]
    deployer: Optional[str]
    init_code_hash: Optional[str] = None


def read_registry(filepath: Path) -> List[RegistryEntry]:
    with open(filepath, "r") as file:
        data = json.load(file)
    registry_entries = list()
    for chain_id, entries in data.items():
        for contract_name, artifacts in entries.items():
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=contract_name,
                address=to_checksum_address(artifacts["address"]),
                kind=ContractKind(artifacts.get("kind", ContractKind.IMPLEMENTATION)),
                tx_hash=artifacts.get("tx_hash"),
                block_number=artifacts.get("block_number"),
                deployer=artifacts.get("deployer"),
                init_code_hash=artifacts.get("init_code_hash"),
            )
            registry_entries.append(registry_entry)
    return registry_entries


def _serialize(entries: List[RegistryEntry]) -> Dict[str, Dict]:
    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "kind": ContractKind(entry.kind).value,
            "tx_hash": entry.tx_hash,
            "block_number": None if entry.block_number is None else int(entry.block_number),
            "deployer": entry.deployer,
            "init_code_hash": entry.init_code_hash,
        }
    return data


def _dump(data: Dict, filepath: Path) -> None:
    # write aside then move, so an interrupted write never truncates the registry
    filepath.parent.mkdir(parents=True, exist_ok=True)
    temp_filepath = filepath.with_suffix(".temp.json")
    with open(temp_filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)
    temp_filepath.replace(filepath)


def write_registry(
    entries: List[RegistryEntry],
    filepath: Path,
    silent: bool = False,
    replace_chains: bool = False,
) -> Path:
    """
    Writes a contract registry to a file.

    Entries for chains not present in ``entries`` are preserved. Existing data for the
    same chain is only overwritten with ``replace_chains``; otherwise the output is
    diverted to an ``.unmerged.json`` file next to the registry.
    """

    if not entries:
        if not silent:
            print("No entries provided.")
        return filepath

    data = _serialize(entries)

    # If the file already exists, attempt to merge the data, if not create a new file
    if filepath.exists():
        existing_data = _load_json(filepath)

        if not replace_chains and any(chain_id in existing_data for chain_id in data):
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                print(
                    "Cannot merge registries with overlapping chain IDs.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            if not silent:
                print(f"Updating existing registry at {filepath}.")
            existing_data.update(data)
            data = dict(sorted(existing_data.items()))
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    _dump(data, filepath)
    return filepath


class AddressRegistry:
    """
    Logical contract names -> addresses for one chain.

    Only ever extended: recording a name again with the same address is a no-op,
    with a different address it is a RegistryConflict.

    Transactions that were broadcast but whose receipts were not processed yet are kept
    apart as pending markers, so an interrupted run can pick up the same transaction
    instead of sending another one.
    """

    def __init__(
        self,
        chain_id: ChainId,
        filepath: Optional[Path] = None,
        deployer: Optional[str] = None,
        entries: Optional[Iterable[RegistryEntry]] = None,
    ):
        self.chain_id = chain_id
        self.filepath = filepath
        self.deployer = deployer
        self._entries: Dict[ContractName, RegistryEntry] = OrderedDict()
        self._pending: Dict[str, RegistryEntry] = OrderedDict()
        for entry in entries or ():
            if entry.kind == ContractKind.PENDING:
                self._pending[entry.name] = entry
            else:
                self._entries[entry.name] = entry

    @classmethod
    def load(
        cls,
        filepath: Path,
        chain_id: ChainId,
        deployer: Optional[str] = None,
        silent: bool = False,
    ) -> "AddressRegistry":
        """Loads the entries for ``chain_id`` from a registry file, if there is one."""
        entries = list()
        if filepath.exists():
            entries = [e for e in read_registry(filepath) if e.chain_id == chain_id]
            if not silent:
                print(f"(i) Loaded {len(entries)} registry entries from {filepath}.")
        return cls(chain_id=chain_id, filepath=filepath, deployer=deployer, entries=entries)

    def __contains__(self, name: ContractName) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: ContractName) -> ChecksumAddress:
        try:
            return self._entries[name].address
        except KeyError:
            raise AddressNotFound(name)

    def entry(self, name: ContractName) -> RegistryEntry:
        try:
            return self._entries[name]
        except KeyError:
            raise AddressNotFound(name)

    def entries(self) -> List[RegistryEntry]:
        return list(self._entries.values())

    def set(
        self,
        name: ContractName,
        address: ChecksumAddress,
        kind: ContractKind = ContractKind.IMPLEMENTATION,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        init_code_hash: Optional[str] = None,
    ) -> bool:
        """Records an address. Returns False when it was already recorded."""
        if ContractKind(kind) == ContractKind.PENDING:
            raise ValueError("Pending transactions are recorded with mark_pending.")
        if not is_address(address):
            raise ConfigurationError(f"Cannot record '{name}': invalid address {address!r}")
        address = to_checksum_address(address)
        existing = self._entries.get(name)
        if existing is not None:
            if existing.address != address:
                raise RegistryConflict(
                    f"{name} is already recorded at {existing.address}, refusing to record "
                    f"{address}. A changed deterministic address means the deployment inputs "
                    "changed between runs."
                )
            return False

        self._entries[name] = RegistryEntry(
            chain_id=self.chain_id,
            name=name,
            address=address,
            kind=ContractKind(kind),
            tx_hash=tx_hash,
            block_number=block_number,
            deployer=self.deployer,
            init_code_hash=init_code_hash,
        )
        return True

    def record(self, record: AddressRecord) -> bool:
        return self.set(
            name=record.name,
            address=record.address,
            kind=record.kind,
            tx_hash=record.tx_hash,
            block_number=record.block_number,
            init_code_hash=record.init_code_hash,
        )

    #
    # Pending transactions
    #

    def mark_pending(self, step: str, tx_hash: str, to: Optional[ChecksumAddress] = None) -> None:
        """Remembers that ``step`` broadcast ``tx_hash``; ``to`` is None for a contract creation."""
        self._pending[step] = RegistryEntry(
            chain_id=self.chain_id,
            name=step,
            address=to_checksum_address(to or ZERO_ADDRESS),
            kind=ContractKind.PENDING,
            tx_hash=tx_hash,
            block_number=None,
            deployer=self.deployer,
        )

    def pending_tx(self, step: str) -> Optional[str]:
        entry = self._pending.get(step)
        return None if entry is None else entry.tx_hash

    def clear_pending(self, step: str) -> bool:
        return self._pending.pop(step, None) is not None

    def pending(self) -> List[RegistryEntry]:
        return list(self._pending.values())

    def snapshot(self) -> Dict[ContractName, ChecksumAddress]:
        return {name: entry.address for name, entry in sorted(self._entries.items())}

    def save(self) -> Optional[Path]:
        entries = self.entries() + self.pending()
        if self.filepath is None:
            return None
        if not entries:
            if not self.filepath.exists():
                return None
            # the last pending marker of this chain was cleared
            data = _load_json(self.filepath)
            data.pop(str(self.chain_id), None)
            _dump(data, self.filepath)
            return self.filepath
        return write_registry(
            entries=entries, filepath=self.filepath, silent=True, replace_chains=True
        )


def registry_to_env(registry: AddressRegistry) -> List[str]:
    """Renders recorded addresses as ``CONTRACTS_*_ADDR=<address>`` lines."""
    lines = list()
    for name, address in registry.snapshot().items():
        env_name = ENV_VARIABLE_NAMES.get(name)
        if env_name is None:
            continue
        lines.append(f"{env_name}={address}")
    return lines


def merge_registries(
    registry_1_filepath: Path,
    registry_2_filepath: Path,
    output_filepath: Path,
    deprecated_contracts: Optional[List[ContractName]] = None,
    chain_ids: Optional[Iterable[ChainId]] = None,
) -> Path:
    """
    Merges two registry files. Identical entries collapse; the same name on the same chain
    at different addresses is a RegistryConflict.

    ``chain_ids`` restricts the output to those chains. Pending transaction markers belong
    to an unfinished run and are never merged.
    """
    # If no deprecated contracts are specified, use an empty list
    deprecated_contracts = deprecated_contracts or []
    chain_ids = None if chain_ids is None else set(chain_ids)

    merged: Dict[tuple, RegistryEntry] = OrderedDict()
    for filepath in (registry_1_filepath, registry_2_filepath):
        for entry in read_registry(filepath):
            if entry.name in deprecated_contracts or entry.kind == ContractKind.PENDING:
                continue
            if chain_ids is not None and entry.chain_id not in chain_ids:
                continue
            key = (entry.chain_id, entry.name)
            existing = merged.get(key)
            if existing is not None and existing.address != entry.address:
                raise RegistryConflict(
                    f"Conflict detected for {entry.name} on chain id {entry.chain_id}: "
                    f"{existing.address} ({registry_1_filepath}) vs "
                    f"{entry.address} ({registry_2_filepath})"
                )
            merged.setdefault(key, entry)

    if output_filepath.exists():
        output_filepath.unlink()
    write_registry(entries=list(merged.values()), filepath=output_filepath)
    print(f"Merged registry output to {output_filepath}")
    return output_filepath


def normalize_registry(filepath: Path, drop_pending: bool = False) -> List[RegistryEntry]:
    """
    Normalizes a potentially non-standard registry file. With ``drop_pending``, markers of
    broadcast transactions are removed so the next run sends them again.

    Returns the dropped pending entries.
    """
    try:
        registry_entries = read_registry(filepath=filepath)
    except Exception:
        print(f"Error when reading registry at {filepath}.")
        raise

    dropped = list()
    if drop_pending:
        dropped = [e for e in registry_entries if e.kind == ContractKind.PENDING]
        registry_entries = [e for e in registry_entries if e.kind != ContractKind.PENDING]
        for entry in dropped:
            print(f"Dropping pending {entry.name} on chain id {entry.chain_id}: {entry.tx_hash}")

    try:
        temp_filepath = filepath.with_suffix(".normalized.json")
        if registry_entries:
            write_registry(entries=registry_entries, filepath=temp_filepath, silent=True)
        else:
            _dump(dict(), temp_filepath)
        shutil.copy(temp_filepath, filepath)
        temp_filepath.unlink()
        print(f"Successfully normalized registry at {filepath}.")
    except Exception:
        print(f"Error when normalizing registry at {filepath}.")
        raise
    return dropped
