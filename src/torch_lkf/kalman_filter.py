from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Protocol

import torch

from .errors import AllocationFailure, DimensionMismatch, InversionStatus, SingularMatrixError
from .matrix import (
    DTYPE,
    Inversion,
    Matrix,
    add,
    as_matrix,
    dump,
    format_rows,
    identity,
    invert,
    multiply,
    sub,
    transpose,
    zeros,
)

logger = logging.getLogger(__name__)


class SingularPolicy(enum.Enum):
    """What to do when the innovation covariance cannot be inverted properly.

    STRICT: raise a SingularMatrixError, no state is produced.
    DEGRADE: go on with a best-effort gain. The tick is flagged as singular.
        A near singular covariance uses the inverse computed with a substituted pivot,
        a hard singular covariance, or non-finite values in the covariance, the gain or the corrected state,
        give a null gain (the measure is ignored).
    """

    STRICT = "strict"
    DEGRADE = "degrade"


@dataclasses.dataclass
class LTISystem:
    """Discrete linear time-invariant system.

        x_{k+1} = A x_k + B u_k
        y_k     = C x_k + D u_k

    Attributes:
        state_matrix (Matrix): State transition ``A``.
            Shape: ``(dim_x, dim_x)``
        input_matrix (Matrix): Input to state ``B``.
            Shape: ``(dim_x, dim_u)``
        output_matrix (Matrix): State to output ``C``.
            Shape: ``(dim_y, dim_x)``
        feedthrough_matrix (Matrix): Input to output ``D``.
            Shape: ``(dim_y, dim_u)``
    """

    state_matrix: Matrix
    input_matrix: Matrix
    output_matrix: Matrix
    feedthrough_matrix: Matrix

    @classmethod
    def from_values(cls, state_matrix, input_matrix, output_matrix, feedthrough_matrix) -> LTISystem:
        """Build a system from tensors, nested sequences or scalars."""
        return cls(
            as_matrix(state_matrix), as_matrix(input_matrix), as_matrix(output_matrix), as_matrix(feedthrough_matrix)
        )

    @property
    def dims(self) -> tuple[int, int, int]:
        """State, input and output dimensions ``(dim_x, dim_u, dim_y)``."""
        return self.state_matrix.rows, self.input_matrix.cols, self.output_matrix.rows

    def clone(self) -> LTISystem:
        return LTISystem(
            self.state_matrix.clone(),
            self.input_matrix.clone(),
            self.output_matrix.clone(),
            self.feedthrough_matrix.clone(),
        )

    def validate(self) -> tuple[int, int, int]:
        """Check that the four matrices are consistent.

        Returns:
            tuple[int, int, int]: ``(dim_x, dim_u, dim_y)``

        Raises:
            DimensionMismatch: If shapes do not agree.
        """
        dim_x, dim_u, dim_y = self.dims
        _expect_shape("A", self.state_matrix, (dim_x, dim_x))
        _expect_shape("B", self.input_matrix, (dim_x, dim_u))
        _expect_shape("C", self.output_matrix, (dim_y, dim_x))
        _expect_shape("D", self.feedthrough_matrix, (dim_y, dim_u))
        return dim_x, dim_u, dim_y


@dataclasses.dataclass
class NoiseModel:
    """Noise covariances (symmetric PSD by convention, not verified).

    Attributes:
        process_noise (Matrix): Process noise covariance ``Q``.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (Matrix): Measurement noise covariance ``R``.
            Shape: ``(dim_y, dim_y)``
    """

    process_noise: Matrix
    measurement_noise: Matrix

    @classmethod
    def from_values(cls, process_noise, measurement_noise) -> NoiseModel:
        return cls(as_matrix(process_noise), as_matrix(measurement_noise))


@dataclasses.dataclass
class FilterState:
    """Current belief of the filter.

    Attributes:
        mean (Matrix): State estimate ``x``.
            Shape: ``(dim_x, 1)``
        covariance (Matrix): Error covariance estimate ``P``.
            Shape: ``(dim_x, dim_x)``
    """

    mean: Matrix
    covariance: Matrix

    @classmethod
    def from_values(cls, mean, covariance) -> FilterState:
        return cls(as_matrix(mean), as_matrix(covariance))

    def clone(self) -> FilterState:
        """Return a deep copy of the state."""
        return FilterState(self.mean.clone(), self.covariance.clone())


@dataclasses.dataclass
class TickResult:
    """Output of a single filter step.

    Attributes:
        state (FilterState): Posterior state ``(x_est, P_est)``.
        output (Matrix): Predicted output ``y_est = C x_est + D u_k``.
            Shape: ``(dim_y, 1)``
        singular (bool): True if the innovation covariance was singular and the step was degraded.
    """

    state: FilterState
    output: Matrix
    singular: bool = False


@dataclasses.dataclass
class ProcessResult:
    """Outputs of a filtering run, one entry per step.

    Attributes:
        state_dim (int): Dimension of the state variable.
        measure_dim (int): Dimension of the measured variable.
        states (list[Matrix]): Posterior state estimates ``x_est``.
        outputs (list[Matrix]): Predicted outputs ``y_est``.
        covariances (list[Matrix]): Posterior covariances ``P_est``.
        singular_steps (list[int]): Steps that were degraded by a singular innovation covariance.
    """

    state_dim: int
    measure_dim: int
    states: list[Matrix] = dataclasses.field(default_factory=list)
    outputs: list[Matrix] = dataclasses.field(default_factory=list)
    covariances: list[Matrix] = dataclasses.field(default_factory=list)
    singular_steps: list[int] = dataclasses.field(default_factory=list)

    def __len__(self) -> int:
        return len(self.states)

    def append(self, result: TickResult) -> None:
        if result.singular:
            self.singular_steps.append(len(self.states))
        self.states.append(result.state.mean)
        self.outputs.append(result.output)
        self.covariances.append(result.state.covariance)

    def as_tensors(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Stack the results along a leading time dimension.

        Returns:
            torch.Tensor: States. Shape: ``(T, dim_x, 1)``
            torch.Tensor: Outputs. Shape: ``(T, dim_y, 1)``
            torch.Tensor: Covariances. Shape: ``(T, dim_x, dim_x)``
        """
        if not self.states:
            return (
                torch.empty(0, self.state_dim, 1, dtype=DTYPE),
                torch.empty(0, self.measure_dim, 1, dtype=DTYPE),
                torch.empty(0, self.state_dim, self.state_dim, dtype=DTYPE),
            )

        return (
            torch.stack([matrix.view() for matrix in self.states]),
            torch.stack([matrix.view() for matrix in self.outputs]),
            torch.stack([matrix.view() for matrix in self.covariances]),
        )


class ModelUpdateHook(Protocol):
    """Called by `KalmanFilter.process` after each step.

    It receives the index of the step just computed, a copy of the current system and a copy of the posterior
    state. Returning a new system replaces the model from the next step on. Returning None keeps it.
    """

    def __call__(self, step: int, system: LTISystem, state: FilterState) -> LTISystem | None: ...


def _expect_shape(name: str, matrix: Matrix, shape: tuple[int, int]) -> None:
    if matrix.shape != shape:
        raise DimensionMismatch(f"{name} should have shape {shape}, got {matrix.shape}")


def _all_finite(*matrices: Matrix) -> bool:
    return all(bool(torch.isfinite(matrix.buffer()).all()) for matrix in matrices)


def _as_columns(values, dim: int, name: str) -> list[Matrix]:
    """Convert a sequence of column vectors (or a tensor with a leading time dimension) into matrices."""
    if isinstance(values, torch.Tensor):
        if values.ndim == 1 and dim == 1:
            values = values[:, None]
        if values.ndim == 2:  # noqa: PLR2004
            values = values[..., None]
        if values.ndim != 3 or values.shape[1:] != (dim, 1):  # noqa: PLR2004
            raise DimensionMismatch(f"{name}s should have shape (T, {dim}) or (T, {dim}, 1), got {tuple(values.shape)}")
        values = values.to(DTYPE)

    columns = [as_matrix(value) for value in values]
    for step, column in enumerate(columns):
        _expect_shape(f"{name}[{step}]", column, (dim, 1))
    return columns


class KalmanFilter:
    """Kalman filter for a discrete LTI system with inputs.

    It estimates the hidden state of:

        x_k = A x_{k-1} + B u_k + w_k,   w_k ~ N(0, Q)
        y_k = C x_k     + D u_k + v_k,   v_k ~ N(0, R)

    Each call to `tick` runs a prediction (time update) followed by a correction (measurement update):

        x̂ = A x + B u_k                 P̂ = A P Aᵀ + Q
        S = C P̂ Cᵀ + R                  K = P̂ Cᵀ S^{-1}
        x_est = x̂ + K (y_k - C x̂ - D u_k)
        P_est = (I - K C) P̂
        y_est = C x_est + D u_k

    All the algebra goes through the dense kernel of `torch_lkf.matrix`. Shapes are checked once at each public
    entry point, never in the inner computations.

    Attributes:
        system (LTISystem): Model ``A, B, C, D``.
        noise (NoiseModel): Covariances ``Q, R``.
        singular_policy (SingularPolicy): Behavior with a singular innovation covariance.
            Default: DEGRADE
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        system: LTISystem,
        noise: NoiseModel,
        *,
        singular_policy: SingularPolicy | str = SingularPolicy.DEGRADE,
    ) -> None:
        self.system = system
        self.noise = noise
        self.singular_policy = SingularPolicy(singular_policy)
        self._check_model(system)

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.system.state_matrix.rows

    @property
    def input_dim(self) -> int:
        """Dimension of the input variable."""
        return self.system.input_matrix.cols

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.system.output_matrix.rows

    def _check_model(self, system: LTISystem) -> None:
        system.validate()
        _expect_shape("Q", self.noise.process_noise, (system.dims[0], system.dims[0]))
        _expect_shape("R", self.noise.measurement_noise, (system.dims[2], system.dims[2]))

    def _check_state(self, state: FilterState) -> None:
        _expect_shape("x", state.mean, (self.state_dim, 1))
        _expect_shape("P", state.covariance, (self.state_dim, self.state_dim))

    def tick(self, state: FilterState, measure, control=None) -> TickResult:
        """Run a single filter step.

        The given state is not modified: the posterior is returned as a new state.

        Args:
            state (FilterState): Prior state ``(x, P)``, usually the posterior of the previous step.
            measure (Matrix | torch.Tensor | Sequence): Measure ``y_k``.
                Shape: ``(dim_y, 1)``
            control (Matrix | torch.Tensor | Sequence | None): Input ``u_k``. Zero if not given.
                Shape: ``(dim_u, 1)``

        Returns:
            TickResult: Posterior state, predicted output and singularity flag.

        Raises:
            DimensionMismatch: If any shape is inconsistent with the model.
            SingularMatrixError: With the STRICT policy, if the innovation covariance is singular.
        """
        self._check_model(self.system)
        self._check_state(state)
        measure = as_matrix(measure)
        control = zeros(self.input_dim, 1) if control is None else as_matrix(control)
        _expect_shape("y", measure, (self.measure_dim, 1))
        _expect_shape("u", control, (self.input_dim, 1))

        return self._tick(self.system, state, measure, control)

    def process(
        self,
        state: FilterState,
        measures,
        controls=None,
        *,
        update_hook: ModelUpdateHook | None = None,
    ) -> ProcessResult:
        """Run `tick` sequentially over a sequence of measures.

        The posterior of each step is the prior of the next one. The model is fixed during the run unless
        an `update_hook` is given: it is called after each step (once the posterior is stored) and may return
        a new system used from the next step on. The hook only gets copies: it cannot modify the filter state.

        Args:
            state (FilterState): Initial state ``(x0, P0)``.
            measures (Sequence | torch.Tensor): Measures ``y_k`` for each step.
                Shape: ``(T, dim_y, 1)`` or ``(T, dim_y)``
            controls (Sequence | torch.Tensor | None): Inputs ``u_k`` for each step. Zero if not given.
                Shape: ``(T, dim_u, 1)`` or ``(T, dim_u)``
            update_hook (ModelUpdateHook | None): Optional model update called between steps.

        Returns:
            ProcessResult: ``x_est``, ``y_est`` and ``P_est`` for each step.

        Raises:
            DimensionMismatch: If any shape is inconsistent, or if measures and controls lengths differ.
            SingularMatrixError: With the STRICT policy, if an innovation covariance is singular.
        """
        self._check_model(self.system)
        self._check_state(state)
        measures = _as_columns(measures, self.measure_dim, "measure")
        if controls is None:
            null_control = zeros(self.input_dim, 1)
            controls = [null_control] * len(measures)
        else:
            controls = _as_columns(controls, self.input_dim, "control")
        if len(controls) != len(measures):
            raise DimensionMismatch(f"Got {len(measures)} measures but {len(controls)} controls")

        system = self.system
        result = ProcessResult(self.state_dim, self.measure_dim)
        for step, (measure, control) in enumerate(zip(measures, controls)):
            tick = self._tick(system, state, measure, control)
            result.append(tick)
            state = tick.state

            if update_hook is not None:
                replacement = update_hook(step, system.clone(), state.clone())
                if replacement is not None:
                    if replacement.validate() != system.dims:
                        raise DimensionMismatch(
                            f"The model update at step {step} changed the dimensions from {system.dims} "
                            f"to {replacement.dims}"
                        )
                    logger.debug("Model replaced after step %d", step)
                    system = replacement

        return result

    def _tick(self, system: LTISystem, state: FilterState, measure: Matrix, control: Matrix) -> TickResult:
        a, b = system.state_matrix, system.input_matrix
        c, d = system.output_matrix, system.feedthrough_matrix

        # Time update
        predicted_mean = add(multiply(a, state.mean), multiply(b, control))
        predicted_covariance = add(
            multiply(multiply(a, state.covariance), transpose(a)), self.noise.process_noise
        )

        # Measurement update
        covariance_at_output = multiply(predicted_covariance, transpose(c))
        innovation_covariance = add(multiply(c, covariance_at_output), self.noise.measurement_noise)
        inversion = invert(innovation_covariance)

        feedthrough = multiply(d, control)
        residual = sub(sub(measure, multiply(c, predicted_mean)), feedthrough)

        correction = None
        if inversion.matrix is not None:
            gain = multiply(covariance_at_output, inversion.matrix)
            correction = (
                add(predicted_mean, multiply(gain, residual)),
                multiply(sub(identity(a.rows), multiply(gain, c)), predicted_covariance),
            )
            if not _all_finite(innovation_covariance, gain, *correction):
                correction = None

        singular = self._handle_inversion(inversion, innovation_covariance, finite=correction is not None)
        if correction is None:
            # Null gain: the measure is ignored
            mean, covariance = predicted_mean, predicted_covariance
        else:
            mean, covariance = correction

        output = add(multiply(c, mean), feedthrough)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s\n%s\n%s", dump(mean, "x_est"), dump(covariance, "P_est"), dump(output, "y_est"))

        return TickResult(FilterState(mean, covariance), output, singular)

    def _handle_inversion(self, inversion: Inversion, innovation_covariance: Matrix, finite: bool) -> bool:
        """Apply the singular policy. Return True if the step is degraded.

        ``finite`` is False when no correction could be computed, or when ``S``, the gain or the corrected
        state holds non-finite values.
        """
        if inversion.status == InversionStatus.ALLOCATION_FAILURE:
            raise AllocationFailure("Unable to invert the innovation covariance")
        if finite and not inversion.near_singular:
            return False

        if not inversion.ok:
            kind = "singular"
        elif not finite:
            kind = "numerically unusable (non-finite values)"
        else:
            kind = "near singular"

        if self.singular_policy == SingularPolicy.STRICT:
            raise SingularMatrixError(
                f"The innovation covariance is {kind}:\n{dump(innovation_covariance, 'S')}",
                inversion.status,
                inversion.near_singular,
            )

        logger.warning(
            "The innovation covariance is %s, the step is degraded (%s)",
            kind,
            "substituted pivot" if finite else "measure ignored",
        )
        return True

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = (
            f"Kalman Filter (State dimension: {self.state_dim}, Input dimension: {self.input_dim}, "
            f"Measure dimension: {self.measure_dim})"
        )
        process = self._repr_pair("Process: ", "A", self.system.state_matrix, "Q", self.noise.process_noise)
        inputs = self._repr_pair("Input: ", "B", self.system.input_matrix, "D", self.system.feedthrough_matrix)
        measurement = self._repr_pair(
            "Measurement: ", "C", self.system.output_matrix, "R", self.noise.measurement_noise
        )

        n_char = max(len(line) for line in "\n".join((process, inputs, measurement)).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, inputs, measurement])

    def _repr_pair(self, title: str, left_name: str, left: Matrix, right_name: str, right: Matrix) -> str:
        """Display two matrices side by side (or one below the other if too long)."""
        left_repr = format_rows(left)
        right_repr = format_rows(right)

        indent = " " * len(title)
        max_char_left = max(len(line) for line in left_repr)
        max_char_right = max(len(line) for line in right_repr)

        if max_char_left + max_char_right <= self._REPR_SPLIT_LENGTH:  # Single line
            left_repr = [line + " " * (max_char_left - len(line)) for line in left_repr]
            height = max(len(left_repr), len(right_repr))
            left_repr += [" " * max_char_left] * (height - len(left_repr))
            right_repr += [""] * (height - len(right_repr))

            left_header = [f"{title}{left_name} = "] + [indent + "    "] * (height - 1)
            sep = [f"  &  {right_name} = "] + ["         "] * (height - 1)
            return "\n".join("".join(lines).rstrip() for lines in zip(left_header, left_repr, sep, right_repr))

        # Two lines
        headers = [f"{title}{left_name} = "] + [indent + "    "] * (len(left_repr) - 1)
        headers += ["", f"{indent}{right_name} = "] + [indent + "    "] * (len(right_repr) - 1)
        return "\n".join("".join(lines).rstrip() for lines in zip(headers, [*left_repr, "", *right_repr]))


def tick(
    system: LTISystem,
    noise: NoiseModel,
    measure,
    control,
    state: FilterState,
    *,
    singular_policy: SingularPolicy | str = SingularPolicy.DEGRADE,
) -> tuple[FilterState, Matrix]:
    """Run a single filter step. See `KalmanFilter.tick`.

    Returns:
        FilterState: Posterior state ``(x_est, P_est)``
        Matrix: Predicted output ``y_est``
    """
    result = KalmanFilter(system, noise, singular_policy=singular_policy).tick(state, measure, control)
    return result.state, result.output


def process(
    system: LTISystem,
    noise: NoiseModel,
    initial_state: FilterState,
    measures,
    controls=None,
    *,
    update_hook: ModelUpdateHook | None = None,
    singular_policy: SingularPolicy | str = SingularPolicy.DEGRADE,
) -> ProcessResult:
    """Filter a whole sequence of measures. See `KalmanFilter.process`."""
    return KalmanFilter(system, noise, singular_policy=singular_policy).process(
        initial_state, measures, controls, update_hook=update_hook
    )
