#!/usr/bin/env python3
"""Tests for the contract registry."""

import pytest

from devlab_indexer.registry import ContractRegistration, ContractRegistry, load_contract_abi

from conftest import DEX_ADDRESS, TOKEN_ADDRESS


class TestLoadContractAbi:
    def test_bundled_contracts(self):
        """Both demo contracts ship with an ABI."""
        erc20 = load_contract_abi("SampleERC20")
        dex = load_contract_abi("MiniDEX")

        assert {item["name"] for item in erc20 if item["type"] == "event"} == {
            "Transfer", "Approval", "TokensMinted", "TokensBurned"
        }
        assert {item["name"] for item in dex if item["type"] == "event"} == {
            "Swap", "LiquidityAdded"
        }

    def test_unknown_contract(self):
        with pytest.raises(FileNotFoundError):
            load_contract_abi("DoesNotExist")


class TestContractRegistration:
    def test_address_lowercased_and_events_filtered(self):
        abi = [
            {"type": "function", "name": "transfer", "inputs": []},
            {"type": "event", "name": "Ping", "inputs": [], "anonymous": False},
        ]
        registration = ContractRegistration(name="Pinger", address=TOKEN_ADDRESS, abi=tuple(abi))

        assert registration.address == TOKEN_ADDRESS.lower()
        assert registration.event_names == ["Ping"]
        assert registration.to_dict()["address"] == TOKEN_ADDRESS

    def test_invalid_address(self):
        with pytest.raises(ValueError, match="Invalid contract address"):
            ContractRegistration(name="Bad", address="0xnothex", abi=())

    def test_contract_without_events(self):
        with pytest.raises(ValueError, match="declares no events"):
            ContractRegistration(
                name="Silent",
                address=TOKEN_ADDRESS,
                abi=({"type": "function", "name": "f", "inputs": []},),
            )


class TestContractRegistry:
    def test_from_config(self):
        registry = ContractRegistry.from_config(
            {"SampleERC20": TOKEN_ADDRESS, "MiniDEX": DEX_ADDRESS}
        )

        assert len(registry) == 2
        assert registry.get(TOKEN_ADDRESS).name == "SampleERC20"
        assert registry.get(DEX_ADDRESS.upper().replace("0X", "0x")).name == "MiniDEX"

    def test_lookup_is_case_insensitive(self, registry):
        assert TOKEN_ADDRESS.lower() in registry
        assert TOKEN_ADDRESS in registry
        assert DEX_ADDRESS not in registry

    def test_duplicate_address_rejected(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.add_contract("Again", TOKEN_ADDRESS.lower(), load_contract_abi("SampleERC20"))

    def test_remove(self, registry):
        removed = registry.remove(TOKEN_ADDRESS)

        assert removed is not None
        assert removed.name == "SampleERC20"
        assert len(registry) == 0
        assert registry.remove(TOKEN_ADDRESS) is None
