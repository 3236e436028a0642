from __future__ import annotations


class CallGuardError(Exception):
    """Base class for errors raised by the risk engine and its adapters."""


class ConfigurationUnavailable(CallGuardError):
    """An adapter is not configured or its service cannot be reached.

    Non-fatal: the session keeps running on local signals only.
    """


class TransientAdapterFailure(CallGuardError):
    """A single adapter call failed. The call contributes no update."""


class ResourceAcquisitionFailure(CallGuardError):
    """Audio capture could not be started. No session is created."""
