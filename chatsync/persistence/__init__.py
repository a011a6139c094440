"""Remote persistence for reconstructed conversations."""

from chatsync.persistence.gateway import Gateway, PersistenceGateway

__all__ = ["Gateway", "PersistenceGateway"]
