"""A replicated bank ledger kept consistent with a modified Paxos protocol."""

__version__ = "0.1.0"