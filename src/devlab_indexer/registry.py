"""Registry of contracts whose events the indexer decodes."""

import json
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from web3 import Web3

logger = logging.getLogger(__name__)

CONTRACTS_DIR: Path = Path(__file__).parent / "contracts"


def load_contract_abi(contract_name: str) -> list[dict[str, Any]]:
    """Fetches ABI of the given contract from the bundled contracts folder.

    Args:
        contract_name: Name of the contract (without .json extension)

    Returns:
        List of ABI dictionaries for the contract

    Raises:
        FileNotFoundError: If the contract file doesn't exist
        json.JSONDecodeError: If the contract file is invalid JSON
    """
    contract_path: Path = (CONTRACTS_DIR / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data: dict[str, Any] = json.load(file)

    return contract_data["abi"]


@dataclass(frozen=True, slots=True)
class ContractRegistration:
    """A watched contract and the interface its logs are decoded against.

    Attributes:
        name: Human-readable contract name
        address: Lowercased contract address, unique within a registry
        abi: Event entries of the contract ABI
    """

    name: str
    address: str
    abi: tuple[dict[str, Any], ...]

    def __post_init__(self) -> None:
        """Validate and normalize the registration."""
        if not self.name:
            raise ValueError("Contract name is required")

        if not Web3.is_address(self.address):
            raise ValueError(f"Invalid contract address: {self.address}")

        object.__setattr__(self, 'address', self.address.lower())
        object.__setattr__(
            self, 'abi', tuple(item for item in self.abi if item.get("type") == "event")
        )

        if not self.abi:
            raise ValueError(f"Contract {self.name} declares no events")

    @property
    def event_names(self) -> list[str]:
        """Names of the events declared by this contract."""
        return [item["name"] for item in self.abi]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "address": Web3.to_checksum_address(self.address),
            "events": self.event_names,
        }


class ContractRegistry:
    """Address to interface mapping owned by the ingestion pipeline.

    Registrations are never mutated: changing the watched set means
    registering or removing a contract.
    """

    def __init__(self, registrations: list[ContractRegistration] | None = None) -> None:
        self._contracts: dict[str, ContractRegistration] = {}
        for registration in registrations or []:
            self.register(registration)

    @classmethod
    def from_config(cls, contracts: Mapping[str, str]) -> "ContractRegistry":
        """Build a registry from a name to address mapping of bundled contracts.

        Args:
            contracts: Contract name (matching a bundled ABI file) to address

        Returns:
            Registry holding one registration per configured contract
        """
        registry = cls()
        for name, address in contracts.items():
            registry.add_contract(name, address, load_contract_abi(name))
        return registry

    def register(self, registration: ContractRegistration) -> None:
        """Add a registration.

        Raises:
            ValueError: If the address is already registered
        """
        if registration.address in self._contracts:
            raise ValueError(
                f"Contract already registered at {registration.address}: "
                f"{self._contracts[registration.address].name}"
            )

        self._contracts[registration.address] = registration
        logger.info(
            f"Added contract {registration.name} at {registration.address} for monitoring "
            f"({len(registration.abi)} events)"
        )

    def add_contract(
        self, name: str, address: str, abi: list[dict[str, Any]]
    ) -> ContractRegistration:
        """Create and register a contract from its ABI."""
        registration = ContractRegistration(name=name, address=address, abi=tuple(abi))
        self.register(registration)
        return registration

    def remove(self, address: str) -> ContractRegistration | None:
        """Stop watching a contract, returning its registration if present."""
        registration = self._contracts.pop(address.lower(), None)
        if registration:
            logger.info(f"Removed contract {registration.name} at {registration.address}")
        return registration

    def get(self, address: str) -> ContractRegistration | None:
        """Look up the registration for an address (any case)."""
        return self._contracts.get(address.lower())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._contracts

    def __len__(self) -> int:
        return len(self._contracts)

    def __iter__(self) -> Iterator[ContractRegistration]:
        return iter(list(self._contracts.values()))
