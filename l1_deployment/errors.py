from typing import Dict, Iterable, Optional


class DeploymentError(Exception):
    """Base class for everything that can stop a deployment run."""


class ConfigurationError(DeploymentError, ValueError):
    """Bad or missing parameters. Raised before any transaction is sent."""


class SelectorConflict(ConfigurationError):
    """A function selector is claimed by more than one target facet."""

    def __init__(self, selector: bytes, facets: Iterable[str]):
        self.selector = selector
        self.facets = tuple(facets)
        super().__init__(
            f"Selector 0x{selector.hex()} is claimed by more than one facet: "
            f"{', '.join(self.facets)}"
        )


class SaltReuse(ConfigurationError):
    """The same salt was used for one name with different init code."""


class AddressNotFound(DeploymentError, KeyError):
    """No address is recorded under the requested name."""

    def __str__(self):
        return f"No address recorded for '{self.args[0]}'"


class RegistryConflict(DeploymentError):
    """A name is already recorded with a different address."""


class AddressMismatch(DeploymentError):
    """The deployed contract did not land on the predicted address."""


class TransactionRejected(DeploymentError):
    """The chain rejected or reverted a transaction."""

    def __init__(self, name: str, reason: str, tx_hash: Optional[str] = None):
        self.name = name
        self.reason = reason
        self.tx_hash = tx_hash
        message = f"{name} failed: {reason}"
        if tx_hash:
            message = f"{message} (tx {tx_hash})"
        super().__init__(message)


class DeploymentFailed(TransactionRejected):
    """A deployment step did not confirm successfully."""


class UpgradeFailed(TransactionRejected):
    """The atomic diamond cut reverted; the diamond keeps its previous facets."""


class PartialGroupFailure(DeploymentError):
    """Some transactions of a concurrently submitted group failed."""

    def __init__(self, group: int, failures: Dict[str, Exception], confirmed: Iterable[str]):
        self.group = group
        self.failures = failures
        self.confirmed = tuple(confirmed)
        details = "\n".join(f"\t{name}: {error}" for name, error in failures.items())
        super().__init__(
            f"Group {group} failed for {', '.join(failures)} "
            f"(confirmed siblings: {', '.join(self.confirmed) or 'none'}):\n{details}"
        )
