"""
Checkpoint Configuration - Controls checkpoint retention during execution.

Every committed step is always checkpointed synchronously; only retention
is configurable.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Retention settings for a scheduler's checkpoint store.
    """

    # Prune checkpoints older than this; None keeps full history
    max_age_days: int | None = None
    prune_every_n_steps: int = 10  # Check for pruning every N committed steps

    def should_prune(self, steps_committed: int) -> bool:
        """
        Check if should prune checkpoints based on execution progress.

        Args:
            steps_committed: Steps committed so far in the current run

        Returns:
            True if old checkpoints should be pruned now
        """
        return (
            self.max_age_days is not None
            and self.prune_every_n_steps > 0
            and steps_committed > 0
            and steps_committed % self.prune_every_n_steps == 0
        )


# Keep every checkpoint
DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig()
