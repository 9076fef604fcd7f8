"""pyamrfem.core.errors
Exceptions raised by the element hierarchy and the DOF indexer.

All of them are raised synchronously to the immediate caller; nothing in
this package retries an operation that failed with one of these.
"""


class AMRError(RuntimeError):
    """Base class for every error raised by the adaptive mesh core."""
    pass


class InvalidCellType(AMRError, ValueError):
    """Raised when a cell-type tag is not part of the supported catalog."""
    pass


class RefinementDepthExceeded(AMRError):
    """Raised when refining an element already at the configured max level."""
    pass


class IllegalRefine(AMRError, ValueError):
    """Raised when refining an element that already has children."""
    pass


class IllegalCoarsen(AMRError):
    """Raised when coarsening an element whose children are not flagged leaves."""
    pass


class ElementLocked(AMRError):
    """Raised when mutating an element that an in-progress pass has locked."""
    pass


class UnsupportedConstraintDepth(AMRError):
    """Raised when hanging-node chains do not settle within the pass limit."""
    pass


class InconsistentPartition(AMRError):
    """
    Raised when a neighbor query crosses into a partition that was never
    ghosted.  This means the ghost exchange did not run before the query.
    """
    pass
