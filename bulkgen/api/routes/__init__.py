from . import embeddings, jobs, reconcile, stages, worker

__all__ = ["embeddings", "jobs", "reconcile", "stages", "worker"]
