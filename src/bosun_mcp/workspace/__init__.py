"""Git workspace provisioning."""

from .provisioner import (
    BranchExistsError,
    CheckoutError,
    CloneError,
    CommitError,
    CommitishNotFoundError,
    FetchError,
    PushError,
    WorkspaceError,
    WorkspaceExistsError,
    WorkspaceProvisioner,
)

__all__ = [
    "BranchExistsError",
    "CheckoutError",
    "CloneError",
    "CommitError",
    "CommitishNotFoundError",
    "FetchError",
    "PushError",
    "WorkspaceError",
    "WorkspaceExistsError",
    "WorkspaceProvisioner",
]
