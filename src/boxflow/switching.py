"""
Primary variable switching.

When a phase appears or disappears at a vertex, the phase presence of the
vertex changes and the switch primary variable is redefined:

- liquid only -> both phases, if the fictitious gas mole fractions in
  equilibrium with the liquid sum up to more than one
- gas only -> both phases, if the fictitious liquid mole fractions sum up to
  more than one
- both phases -> liquid only / gas only, if the gas / liquid saturation
  drops below zero

Vertices that switched in the previous iteration need a larger excess to
switch again. A vertex switching straight back to the presence it just left
is oscillating; its switching is suspended for a few iterations.
"""

import logging
import typing
import warnings

import attrs

from boxflow.config import Config
from boxflow.errors import SwitchOscillation
from boxflow.grid import Element
from boxflow.types import Component, Phase, PhasePresence
from boxflow.volume_variables import SolutionVector, VolumeVariables, compute_volume_variables

if typing.TYPE_CHECKING:
    from boxflow.model import BoxModel


logger = logging.getLogger(__name__)

__all__ = ["PrimaryVariableSwitch", "evaluate_switch"]

NEW_PHASE_SATURATION = 1e-4
"""Saturation assigned to a phase that just appeared."""


def evaluate_switch(
    presence: PhasePresence,
    vol_vars: VolumeVariables,
    recently_switched: bool,
    saturation_tolerance: float = 0.01,
    composition_tolerance: float = 0.02,
) -> typing.Optional[typing.Tuple[PhasePresence, float]]:
    """
    Decide whether a vertex changes its phase presence.

    :param presence: Current phase presence.
    :param vol_vars: Volume variables of the vertex at the current iterate.
    :param recently_switched: Whether the vertex switched in the previous iteration.
    :param saturation_tolerance: Negative saturation a recently switched vertex may reach.
    :param composition_tolerance: Relative excess of the fictitious mole fraction
        sum required from a recently switched vertex.
    :return: New presence and new value of the switch variable, or `None`.
    """
    x = vol_vars.mole_fraction
    if presence == PhasePresence.GAS_ONLY:
        limit = 1.0 + composition_tolerance if recently_switched else 1.0
        liquid_sum = x[Phase.LIQUID, Component.H2O] + x[Phase.LIQUID, Component.N2]
        if liquid_sum > limit:
            return PhasePresence.BOTH, 1.0 - NEW_PHASE_SATURATION

    elif presence == PhasePresence.LIQUID_ONLY:
        limit = 1.0 + composition_tolerance if recently_switched else 1.0
        gas_sum = x[Phase.GAS, Component.H2O] + x[Phase.GAS, Component.N2]
        if gas_sum > limit:
            return PhasePresence.BOTH, NEW_PHASE_SATURATION

    else:
        minimum = -saturation_tolerance if recently_switched else 0.0
        if vol_vars.saturation[Phase.GAS] <= minimum:
            return PhasePresence.LIQUID_ONLY, float(x[Phase.LIQUID, Component.N2])
        if vol_vars.saturation[Phase.LIQUID] <= minimum:
            return PhasePresence.GAS_ONLY, float(x[Phase.GAS, Component.H2O])
    return None


@attrs.define
class PrimaryVariableSwitch:
    """
    Applies phase switches after each Newton update and keeps the switch
    history of the current time step.
    """

    config: Config = attrs.field(factory=Config)
    _iteration: int = attrs.field(init=False, default=0)
    _last_switch: typing.Dict[int, int] = attrs.field(init=False, factory=dict)
    """Iteration of the last switch per vertex."""
    _left_presence: typing.Dict[int, int] = attrs.field(init=False, factory=dict)
    """Presence a vertex had before its last switch."""
    _frozen_until: typing.Dict[int, int] = attrs.field(init=False, factory=dict)
    _vertex_elements: typing.Optional[typing.Dict[int, typing.Tuple[Element, int]]] = attrs.field(
        init=False, default=None
    )

    def reset(self) -> None:
        """Forget the switch history, called at the beginning of every time step attempt."""
        self._iteration = 0
        self._last_switch.clear()
        self._left_presence.clear()
        self._frozen_until.clear()

    def is_frozen(self, dof: int) -> bool:
        return self._iteration < self._frozen_until.get(dof, 0)

    def _locate_vertices(self, model: "BoxModel") -> typing.Dict[int, typing.Tuple[Element, int]]:
        if self._vertex_elements is None:
            self._vertex_elements = {}
            for element in model.grid.elements():
                for local, dof in enumerate(element.vertex_indices):
                    self._vertex_elements.setdefault(dof, (element, local))
        return self._vertex_elements

    def update(self, model: "BoxModel", solution: SolutionVector) -> bool:
        """
        Switch the phase presence of all vertices where a phase appeared or disappeared.

        :param model: The model, used to evaluate volume variables.
        :param solution: Current iterate, modified in place.
        :return: Whether any vertex switched.
        """
        self._iteration += 1
        switched: typing.List[int] = []
        for dof, (element, local) in self._locate_vertices(model).items():
            if model.is_constrained(dof):
                continue
            if self.is_frozen(dof):
                continue

            presence = PhasePresence(int(solution.presence[dof]))
            vol_vars = compute_volume_variables(
                model.problem, element, local, solution.values[dof], presence, model.indices
            )
            recently_switched = self._last_switch.get(dof) == self._iteration - 1
            result = evaluate_switch(
                presence,
                vol_vars,
                recently_switched,
                saturation_tolerance=self.config.switch_saturation_tolerance,
                composition_tolerance=self.config.switch_composition_tolerance,
            )
            if result is None:
                continue

            new_presence, new_value = result
            if recently_switched and int(new_presence) == self._left_presence.get(dof):
                suppression = self.config.switch_suppression_iterations
                self._frozen_until[dof] = self._iteration + suppression + 1
                message = (
                    f"Phase presence of vertex {dof} oscillates between "
                    f"{PhasePresence(self._left_presence[dof]).name} and {presence.name}; "
                    f"switching suspended for {suppression} iterations"
                )
                logger.warning(message)
                warnings.warn(message, SwitchOscillation, stacklevel=2)
                continue

            logger.debug(
                f"Vertex {dof} switches from {presence.name} to {new_presence.name} "
                f"(iteration {self._iteration})"
            )
            self._left_presence[dof] = int(presence)
            self._last_switch[dof] = self._iteration
            solution.presence[dof] = int(new_presence)
            solution.values[dof, model.indices.switch_index] = new_value
            switched.append(dof)

        if switched:
            logger.info(f"{len(switched)} vertices switched phase presence")
        return bool(switched)

    @property
    def num_frozen(self) -> int:
        return sum(1 for dof in self._frozen_until if self.is_frozen(dof))
