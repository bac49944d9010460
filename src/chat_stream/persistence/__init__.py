from chat_stream.persistence.checkpoints import CheckpointRecord, CheckpointStore
from chat_stream.persistence.persister import CheckpointPersister, CheckpointPolicy
from chat_stream.persistence.pruning import prune_checkpoints
from chat_stream.persistence.store import CheckpointDatabase

__all__ = [
    "CheckpointDatabase",
    "CheckpointPersister",
    "CheckpointPolicy",
    "CheckpointRecord",
    "CheckpointStore",
    "prune_checkpoints",
]
