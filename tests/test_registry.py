import json

import pytest
from click.testing import CliRunner
from eth_utils import to_checksum_address

from l1_deployment.errors import AddressNotFound, ConfigurationError, RegistryConflict
from l1_deployment.registry import (
    AddressRecord,
    AddressRegistry,
    ContractKind,
    RegistryEntry,
    merge_registries,
    normalize_registry,
    read_registry,
    registry_to_env,
    write_registry,
)
from scripts import registry_tools
from tests.conftest import CHAIN_ID, DEPLOYER

ADDRESS_1 = to_checksum_address("0x" + "01" * 20)
ADDRESS_2 = to_checksum_address("0x" + "02" * 20)


def _entry(chain_id, name, address, kind=ContractKind.IMPLEMENTATION):
    return RegistryEntry(
        chain_id=chain_id,
        name=name,
        address=address,
        kind=kind,
        tx_hash=None,
        block_number=None,
        deployer=None,
    )


def test_set_is_idempotent(registry):
    assert registry.set("AllowList", ADDRESS_1) is True
    assert registry.set("AllowList", ADDRESS_1.lower()) is False
    assert registry.get("AllowList") == ADDRESS_1
    assert len(registry) == 1


def test_set_different_address_is_a_conflict(registry):
    registry.set("AllowList", ADDRESS_1)
    with pytest.raises(RegistryConflict):
        registry.set("AllowList", ADDRESS_2)
    assert registry.get("AllowList") == ADDRESS_1


def test_invalid_address_is_rejected(registry):
    with pytest.raises(ConfigurationError):
        registry.set("AllowList", "0x1234")


def test_missing_name(registry):
    with pytest.raises(AddressNotFound):
        registry.get("Bridgehead")
    # also a KeyError for mapping-style callers
    with pytest.raises(KeyError):
        registry.entry("Bridgehead")


def test_save_and_load(registry):
    registry.record(
        AddressRecord(
            "BridgeheadProxy", ADDRESS_2, ContractKind.PROXY, tx_hash="0xabc", block_number=7
        )
    )
    registry.set("AllowList", ADDRESS_1)
    filepath = registry.save()

    data = json.loads(filepath.read_text())
    assert list(data[str(CHAIN_ID)]) == ["AllowList", "BridgeheadProxy"]
    assert data[str(CHAIN_ID)]["BridgeheadProxy"] == {
        "address": ADDRESS_2,
        "kind": "proxy",
        "tx_hash": "0xabc",
        "block_number": 7,
        "deployer": DEPLOYER,
        "init_code_hash": None,
    }

    loaded = AddressRegistry.load(filepath, chain_id=CHAIN_ID)
    assert loaded.snapshot() == registry.snapshot()
    assert loaded.entry("BridgeheadProxy").kind == ContractKind.PROXY

    other_chain = AddressRegistry.load(filepath, chain_id=1)
    assert len(other_chain) == 0


def test_save_keeps_other_chains(tmp_path):
    filepath = tmp_path / "registry.json"
    write_registry([_entry(1, "AllowList", ADDRESS_1)], filepath)

    registry = AddressRegistry(chain_id=CHAIN_ID, filepath=filepath)
    registry.set("AllowList", ADDRESS_2)
    registry.save()

    entries = read_registry(filepath)
    assert {(e.chain_id, e.address) for e in entries} == {(1, ADDRESS_1), (CHAIN_ID, ADDRESS_2)}


def test_write_registry_diverts_overlapping_chains(tmp_path):
    filepath = tmp_path / "registry.json"
    write_registry([_entry(1, "AllowList", ADDRESS_1)], filepath)
    output = write_registry([_entry(1, "AllowList", ADDRESS_2)], filepath)
    assert output == tmp_path / "registry.unmerged.json"
    assert read_registry(filepath)[0].address == ADDRESS_1


def test_registry_to_env(registry):
    registry.set("AllowList", ADDRESS_1)
    registry.set("DiamondProxy", ADDRESS_2)
    registry.set("Unlisted", ADDRESS_2)
    assert registry_to_env(registry) == [
        f"CONTRACTS_L1_ALLOW_LIST_ADDR={ADDRESS_1}",
        f"CONTRACTS_DIAMOND_PROXY_ADDR={ADDRESS_2}",
    ]


def test_merge_registries(tmp_path):
    registry_1 = tmp_path / "registry_1.json"
    registry_2 = tmp_path / "registry_2.json"
    output = tmp_path / "merged.json"
    write_registry([_entry(1, "AllowList", ADDRESS_1), _entry(1, "Old", ADDRESS_2)], registry_1)
    write_registry([_entry(1, "AllowList", ADDRESS_1), _entry(5, "AllowList", ADDRESS_2)], registry_2)

    merge_registries(registry_1, registry_2, output, deprecated_contracts=["Old"])
    entries = read_registry(output)
    assert [(e.chain_id, e.name, e.address) for e in entries] == [
        (1, "AllowList", ADDRESS_1),
        (5, "AllowList", ADDRESS_2),
    ]


def test_merge_conflict(tmp_path):
    registry_1 = tmp_path / "registry_1.json"
    registry_2 = tmp_path / "registry_2.json"
    write_registry([_entry(1, "AllowList", ADDRESS_1)], registry_1)
    write_registry([_entry(1, "AllowList", ADDRESS_2)], registry_2)
    with pytest.raises(RegistryConflict):
        merge_registries(registry_1, registry_2, tmp_path / "merged.json")


def test_normalize_registry(tmp_path):
    filepath = tmp_path / "registry.json"
    data = {
        "5": {"Zeta": {"address": ADDRESS_1.lower()}},
        "1": {"Beta": {"address": ADDRESS_2.lower()}, "Alpha": {"address": ADDRESS_1}},
    }
    filepath.write_text(json.dumps(data))

    normalize_registry(filepath)

    normalized = json.loads(filepath.read_text())
    assert list(normalized) == ["1", "5"]
    assert list(normalized["1"]) == ["Alpha", "Beta"]
    assert normalized["1"]["Beta"]["address"] == ADDRESS_2
    assert normalized["5"]["Zeta"]["kind"] == "implementation"


def test_pending_markers_are_saved_apart_from_addresses(registry):
    registry.set("AllowList", ADDRESS_1)
    registry.mark_pending("ProofSystemRegistration", "0xfeed", to=ADDRESS_2)
    registry.save()

    loaded = AddressRegistry.load(registry.filepath, chain_id=CHAIN_ID)
    assert loaded.pending_tx("ProofSystemRegistration") == "0xfeed"
    assert loaded.pending_tx("AllowList") is None
    assert "ProofSystemRegistration" not in loaded
    assert len(loaded) == 1
    assert registry_to_env(loaded) == [f"CONTRACTS_L1_ALLOW_LIST_ADDR={ADDRESS_1}"]
    with pytest.raises(ValueError):
        loaded.set("ProofSystemRegistration", ADDRESS_2, kind=ContractKind.PENDING)

    assert loaded.clear_pending("ProofSystemRegistration") is True
    assert loaded.clear_pending("ProofSystemRegistration") is False
    loaded.save()
    assert AddressRegistry.load(registry.filepath, chain_id=CHAIN_ID).pending() == []


def test_clearing_the_only_pending_marker_empties_the_chain(tmp_path):
    filepath = tmp_path / "registry.json"
    write_registry([_entry(1, "AllowList", ADDRESS_1)], filepath)
    registry = AddressRegistry(chain_id=CHAIN_ID, filepath=filepath)
    registry.mark_pending("Create2Factory", "0xfeed")
    registry.save()
    assert read_registry(filepath)[-1].address == "0x" + "0" * 40

    registry.clear_pending("Create2Factory")
    registry.save()
    assert [(e.chain_id, e.name) for e in read_registry(filepath)] == [(1, "AllowList")]


def test_merge_registries_for_selected_chains(tmp_path):
    registry_1 = tmp_path / "registry_1.json"
    registry_2 = tmp_path / "registry_2.json"
    output = tmp_path / "merged.json"
    write_registry(
        [
            _entry(1, "AllowList", ADDRESS_1),
            _entry(1, "Multicall3", ADDRESS_2, kind=ContractKind.PENDING),
        ],
        registry_1,
    )
    write_registry([_entry(5, "AllowList", ADDRESS_2), _entry(7, "AllowList", ADDRESS_1)], registry_2)

    merge_registries(registry_1, registry_2, output, chain_ids=[1, 5])
    entries = read_registry(output)
    assert [(e.chain_id, e.name) for e in entries] == [(1, "AllowList"), (5, "AllowList")]


def test_normalize_registry_drops_pending(tmp_path):
    filepath = tmp_path / "registry.json"
    write_registry(
        [
            _entry(1, "AllowList", ADDRESS_1),
            _entry(1, "ProofSystemRegistration", ADDRESS_2, kind=ContractKind.PENDING),
        ],
        filepath,
    )

    assert normalize_registry(filepath) == []
    assert len(read_registry(filepath)) == 2

    dropped = normalize_registry(filepath, drop_pending=True)
    assert [e.name for e in dropped] == ["ProofSystemRegistration"]
    assert [e.name for e in read_registry(filepath)] == ["AllowList"]


def test_registry_tools_commands(tmp_path):
    registry_1 = tmp_path / "registry_1.json"
    registry_2 = tmp_path / "registry_2.json"
    output = tmp_path / "merged.json"
    write_registry(
        [
            _entry(1, "AllowList", ADDRESS_1),
            _entry(1, "Multicall3", ADDRESS_2, kind=ContractKind.PENDING),
        ],
        registry_1,
    )
    write_registry([_entry(5, "AllowList", ADDRESS_2)], registry_2)
    runner = CliRunner()

    result = runner.invoke(
        registry_tools.cli, ["merge", str(registry_1), str(registry_2), "-o", str(output), "-c", "5"]
    )
    assert result.exit_code == 0, result.output
    assert [(e.chain_id, e.name) for e in read_registry(output)] == [(5, "AllowList")]

    result = runner.invoke(registry_tools.cli, ["normalize", "-r", str(registry_1), "--drop-pending"])
    assert result.exit_code == 0, result.output
    assert "Dropped 1 pending transaction" in result.output
    assert [e.name for e in read_registry(registry_1)] == ["AllowList"]
