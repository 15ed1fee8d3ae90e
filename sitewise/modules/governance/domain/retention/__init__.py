from sitewise.modules.governance.domain.retention.policy import (
    RetentionCategory,
    RetentionConfigService,
    ResolvedRetentionPolicy,
)
from sitewise.modules.governance.domain.retention.strategy import DeletionStrategy, HardDeleteStrategy
from sitewise.modules.governance.domain.retention.sweeper import RetentionRunReport, RetentionSweeper

__all__ = [
    "RetentionCategory",
    "RetentionConfigService",
    "ResolvedRetentionPolicy",
    "DeletionStrategy",
    "HardDeleteStrategy",
    "RetentionRunReport",
    "RetentionSweeper",
]
