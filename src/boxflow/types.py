import enum
import typing

import attrs
import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias


__all__ = [
    "Vector",
    "Tensor",
    "Permeability",
    "Phase",
    "Component",
    "PhasePresence",
    "DifferenceMethod",
    "BoundaryConditionType",
    "Indices",
    "Preconditioner",
    "PreconditionerFactory",
    "Solver",
    "SolverFunc",
]


Vector: TypeAlias = np.typing.NDArray[np.floating]
"""Position, normal or gradient vector of length `dimension`."""
Tensor: TypeAlias = np.typing.NDArray[np.floating]
"""Second order `dimension x dimension` tensor (e.g. intrinsic permeability)."""
Permeability = typing.Union[float, Tensor]
"""Scalar (isotropic) or full tensor intrinsic permeability (m²)."""


class Phase(enum.IntEnum):
    """Fluid phase indices."""

    LIQUID = 0
    GAS = 1


class Component(enum.IntEnum):
    """Chemical component indices."""

    H2O = 0
    N2 = 1


class PhasePresence(enum.IntEnum):
    """
    Discrete phase state of a vertex.

    Governs the meaning of the switch primary variable:

    - LIQUID_ONLY: mole fraction of N2 in the liquid phase
    - GAS_ONLY: mole fraction of H2O in the gas phase
    - BOTH: gas (non-wetting) phase saturation
    """

    LIQUID_ONLY = 1
    GAS_ONLY = 2
    BOTH = 3


class DifferenceMethod(enum.IntEnum):
    """Finite difference scheme used for numerical Jacobians."""

    BACKWARD = -1
    CENTRAL = 0
    FORWARD = 1


class BoundaryConditionType(str, enum.Enum):
    """Boundary condition type of a single equation at a boundary vertex/face."""

    NEUMANN = "neumann"
    DIRICHLET = "dirichlet"
    OUTFLOW = "outflow"


@attrs.frozen(slots=True)
class Indices:
    """
    Primary variable and equation indices of the two-phase, two-component model.

    The energy equation and the temperature primary variable only exist
    for non-isothermal models.
    """

    non_isothermal: bool = False
    """Whether an energy equation is solved for."""

    pressure_index: int = 0
    """Index of the liquid phase pressure primary variable."""
    switch_index: int = 1
    """Index of the saturation-or-composition switch primary variable."""
    temperature_index: int = 2
    """Index of the temperature primary variable (non-isothermal only)."""

    conti0_equation_index: int = 0
    """Index of the first component mass balance (H2O)."""
    energy_equation_index: int = 2
    """Index of the energy balance (non-isothermal only)."""

    @property
    def num_equations(self) -> int:
        """Number of balance equations (and primary variables) per vertex."""
        return 3 if self.non_isothermal else 2

    def component_equation_index(self, component: int) -> int:
        """Equation index of the mass balance of `component`."""
        return self.conti0_equation_index + int(component)


PreconditionerStr = typing.Literal["ilu", "amg", "diagonal"]
PreconditionerFactory = typing.Callable[
    [typing.Union[csr_array, csr_matrix]], LinearOperator
]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

SolverStr = typing.Literal["direct", "gmres", "lgmres", "bicgstab"]


class SolverFunc(typing.Protocol):
    """
    Protocol for a (SciPy compatible) linear solver function.
    """

    def __call__(
        self,
        A: typing.Any,
        b: typing.Any,
        x0: typing.Optional[typing.Any],
        *,
        rtol: float,
        atol: float,
        maxiter: typing.Optional[int],
        M: typing.Optional[typing.Any],
        callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    ) -> typing.Tuple[np.typing.NDArray, int]: ...


Solver = typing.Union[SolverFunc, SolverStr, str]
