"""
*BOXFLOW*

Box-method finite volume simulation of two-phase, two-component
(water/nitrogen), optionally non-isothermal flow in porous media.
"""

from ._precision import *  # noqa
from .constants import *  # noqa
from .types import *  # noqa
from .config import *  # noqa
from .grid import *  # noqa
from .material_laws import *  # noqa
from .spatial_parameters import *  # noqa
from .fluid_system import *  # noqa
from .volume_variables import *  # noqa
from .flux_variables import *  # noqa
from .local_residual import *  # noqa
from .problem import *  # noqa
from .model import *  # noqa
from .switching import *  # noqa
from .assembler import *  # noqa
from .linear_solvers import *  # noqa
from .newton import *  # noqa
from .timing import *  # noqa
from .simulate import *  # noqa
