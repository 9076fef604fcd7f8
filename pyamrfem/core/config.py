# pyamrfem/core/config.py
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class AMRConfig:
    """
    Tunables shared by refinement, constraint building and DOF numbering.
    """
    # Elements at this level cannot be refined any further.
    max_level: int = 10
    # Number of master-substitution passes allowed before giving up on a
    # chain of hanging nodes.
    max_constraint_passes: int = 8
    # Coefficients with magnitude below this are dropped from constraint rows.
    tol: float = 1e-12

    def with_overrides(self, **kwargs) -> "AMRConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **kwargs)

    def __post_init__(self):
        if self.max_level < 0:
            raise ValueError("max_level must be non-negative.")
        if self.max_constraint_passes < 1:
            raise ValueError("max_constraint_passes must be at least 1.")
        if self.tol < 0.0:
            raise ValueError("tol must be non-negative.")


CONFIG = AMRConfig()
