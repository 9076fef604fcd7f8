from .celltypes import CellType, cell_info
from .config import AMRConfig, CONFIG
from .topology import Node, Element, RefinementFlag
from .mesh import Mesh, ChangeSet, SideNeighbor
from .constraints import ConstraintSet, build_constraints
from .dofhandler import DofHandler, DofMap
__all__=['CellType','cell_info','AMRConfig','CONFIG','Node','Element','RefinementFlag',
         'Mesh','ChangeSet','SideNeighbor','ConstraintSet','build_constraints','DofHandler','DofMap']
