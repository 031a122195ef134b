"""
training.py
~~~~~~~~~~~

Epoch loop with parallel mini-batch gradient accumulation.

Each epoch pulls a batch from a caller-supplied function, splits it
across a thread pool (numpy releases the GIL inside the matrix
products), sums the per-chunk gradients and applies one weight update.
When validation data is given, the network is evaluated on it after
every update; training stops once the validation cost has failed to
improve for ``sequential_validation_failures_required`` epochs in a row
and the best validated parameters are restored.
"""

import functools
import logging
import math
import operator
import os
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from fingers.exceptions import ConfigurationError, ShapeMismatchError
from fingers.gradients import Gradients
from fingers.network import Network

logger = logging.getLogger(__name__)

DEFAULT_BATCH_FRACTION = 0.01
DEFAULT_EPOCH_LOG_PERIOD = 10

Example = Tuple[Sequence[float], Sequence[float]]
TrainData = List[Example]
BatchSupplier = Callable[[], Optional[TrainData]]


@dataclass(frozen=True)
class TrainConfig:
    """
    Hyperparameters for :class:`Trainer`.

    Parameters
    ----------
    learning_rate:
        Gradient-descent step size. Must be positive.
    momentum_rate:
        Fraction of the previous epoch's gradient reapplied each step.
        ``None`` disables momentum.
    validation_ratio:
        Fraction of the data held out for validation, in ``[0, 1)``.
    sequential_validation_failures_required:
        Early-stopping patience: consecutive non-improving epochs tolerated.
    max_epochs:
        Optional cap on the number of epochs.
    epoch_log_period:
        Report progress every this many epochs (10 when unset).
    batch_size:
        Fraction of the training set sampled per epoch (0.01 when unset).
    regularization_param:
        L2 weight decay coefficient; 0 disables it.
    """

    learning_rate: float
    validation_ratio: float = 0.0
    sequential_validation_failures_required: int = 5
    momentum_rate: Optional[float] = None
    max_epochs: Optional[int] = None
    epoch_log_period: Optional[int] = None
    batch_size: Optional[float] = None
    regularization_param: float = 0.0

    def __post_init__(self) -> None:
        if not _is_number(self.learning_rate) or self.learning_rate <= 0:
            raise ConfigurationError(
                f"learning_rate must be positive, got {self.learning_rate!r}"
            )
        if self.momentum_rate is not None and (
            not _is_number(self.momentum_rate) or self.momentum_rate < 0
        ):
            raise ConfigurationError(
                f"momentum_rate must be non-negative, got {self.momentum_rate!r}"
            )
        if not _is_number(self.validation_ratio) or not 0 <= self.validation_ratio < 1:
            raise ConfigurationError(
                f"validation_ratio must be in [0, 1), got {self.validation_ratio!r}"
            )
        _check_positive_int(
            'sequential_validation_failures_required',
            self.sequential_validation_failures_required
        )
        if self.max_epochs is not None:
            _check_positive_int('max_epochs', self.max_epochs)
        if self.epoch_log_period is not None:
            _check_positive_int('epoch_log_period', self.epoch_log_period)
        if self.batch_size is not None and (
            not _is_number(self.batch_size) or not 0 < self.batch_size <= 1
        ):
            raise ConfigurationError(
                f"batch_size must be a fraction in (0, 1], got {self.batch_size!r}"
            )
        if not _is_number(self.regularization_param) or self.regularization_param < 0:
            raise ConfigurationError(
                "regularization_param must be non-negative, "
                f"got {self.regularization_param!r}"
            )

    @property
    def batch_fraction(self) -> float:
        if self.batch_size is None:
            return DEFAULT_BATCH_FRACTION
        return self.batch_size

    @property
    def log_period(self) -> int:
        if self.epoch_log_period is None:
            return DEFAULT_EPOCH_LOG_PERIOD
        return self.epoch_log_period

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainConfig":
        """
        Build a config from a decoded JSON object.

        Raises:
            ConfigurationError: If a required field is absent or a value
                is out of range
        """
        required = (
            'learning_rate',
            'validation_ratio',
            'sequential_validation_failures_required',
        )
        missing = [key for key in required if key not in data]
        if missing:
            raise ConfigurationError(
                f"train config missing fields: {', '.join(missing)}"
            )

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown train config fields: {unknown}")

        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


class TrainingState(Enum):
    """Where the epoch loop is, or why it ended."""

    RUNNING = 'running'
    CONVERGED = 'converged'
    STOPPED = 'stopped'
    MAX_EPOCHS_REACHED = 'max_epochs_reached'
    EXHAUSTED = 'exhausted'


@dataclass
class EpochReport:
    """Progress snapshot emitted every ``epoch_log_period`` epochs."""

    epoch: int
    train_cost: float
    validation_cost: Optional[float] = None
    best_validation_cost: Optional[float] = None
    validation_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        if self.validation_cost is None:
            return f"#{self.epoch} - train err: {self.train_cost}"
        return (
            f"#{self.epoch} - train err: {self.train_cost}, "
            f"val err: {self.validation_cost} "
            f"(last best: {self.best_validation_cost}, "
            f"stability: {self.validation_failures})"
        )


@dataclass
class TrainingResult:
    """Outcome of :meth:`Trainer.train`."""

    state: TrainingState
    epochs: int
    train_cost: Optional[float] = None
    best_validation_cost: Optional[float] = None
    reports: List[EpochReport] = field(default_factory=list)


class LearningFlag:
    """
    Shared "keep learning" flag for cooperative cancellation.

    The trainer reads it once at the top of every epoch; any thread or a
    signal handler may call :meth:`stop`.
    """

    def __init__(self) -> None:
        self._learning = threading.Event()
        self._learning.set()

    def is_learning(self) -> bool:
        return self._learning.is_set()

    def stop(self) -> None:
        self._learning.clear()

    def __bool__(self) -> bool:
        return self.is_learning()


def install_interrupt_handler(flag: LearningFlag) -> Any:
    """
    Make Ctrl-C stop training at the next epoch boundary.

    Must be called from the main thread.

    Returns:
        The previously installed SIGINT handler
    """
    def handle_interrupt(signum, frame):
        logger.info("Stopping...")
        flag.stop()

    return signal.signal(signal.SIGINT, handle_interrupt)


def _stack(vectors: Sequence[Sequence[float]], width: int, what: str) -> np.ndarray:
    rows = [np.asarray(vector, dtype=float) for vector in vectors]
    for row in rows:
        if row.shape != (width,):
            raise ShapeMismatchError((width,), row.shape, what)
    return np.vstack(rows)


class Trainer:
    """
    Runs the epoch loop for one network.

    The network is only mutated between parallel phases, so workers read
    it without locking.

    Args:
        network: Network to train in place
        conf: Hyperparameters
        learning: Cancellation flag; training runs while it is set
        workers: Thread pool size (defaults to the CPU count)
        callback: Called with each :class:`EpochReport`
        yield_func: Called after every epoch, e.g. to let a cooperative
            scheduler run other tasks
    """

    def __init__(
        self,
        network: Network,
        conf: TrainConfig,
        learning: Optional[LearningFlag] = None,
        workers: Optional[int] = None,
        callback: Optional[Callable[[EpochReport], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ):
        self.network = network
        self.conf = conf
        self.learning = learning
        self.workers = workers or os.cpu_count() or 1
        self.callback = callback
        self.yield_func = yield_func

    def _chunks(self, examples: Sequence[Example]) -> List[Tuple[np.ndarray, np.ndarray]]:
        n_chunks = min(self.workers, len(examples))
        in_width = self.network.layer_sizes[0]
        out_width = self.network.layer_sizes[-1]
        chunks = []
        for offset in range(n_chunks):
            part = examples[offset::n_chunks]
            chunks.append((
                _stack([ex[0] for ex in part], in_width, 'input'),
                _stack([ex[1] for ex in part], out_width, 'target'),
            ))
        return chunks

    def _chunk_gradients(self, chunk: Tuple[np.ndarray, np.ndarray]) -> Gradients:
        inputs, targets = chunk
        return self.network.example_gradients(inputs, targets)

    def _chunk_validation_error(self, chunk: Tuple[np.ndarray, np.ndarray]) -> float:
        inputs, targets = chunk
        return self.network.validation_error(inputs, targets)

    def accumulate(self, pool: ThreadPoolExecutor, batch: Sequence[Example]) -> Gradients:
        """Sum gradient contributions of ``batch`` across the pool."""
        contributions = pool.map(self._chunk_gradients, self._chunks(batch))
        return functools.reduce(
            operator.iadd, contributions, self.network.zero_gradients()
        )

    def _terminal_state(self, epoch: int, failures: int) -> Optional[TrainingState]:
        if self.learning is not None and not self.learning.is_learning():
            return TrainingState.STOPPED
        if failures >= self.conf.sequential_validation_failures_required:
            return TrainingState.CONVERGED
        if self.conf.max_epochs is not None and epoch >= self.conf.max_epochs:
            return TrainingState.MAX_EPOCHS_REACHED
        return None

    def train(
        self,
        batch_supplier: BatchSupplier,
        validation_data: Optional[TrainData] = None
    ) -> TrainingResult:
        """
        Train until cancelled, out of patience, out of epochs or out of data.

        Args:
            batch_supplier: Returns the next batch of (input, target) pairs,
                or None when no more data is available
            validation_data: Optional held-out (input, target) pairs

        Returns:
            TrainingResult with the terminal state and the reports emitted

        Raises:
            ShapeMismatchError: If an example has the wrong width
        """
        conf = self.conf
        network = self.network
        is_validating = bool(validation_data)

        epoch = 0
        failures = 0
        train_cost = None
        validation_cost = math.inf
        best_known_net = network.copy()
        last_update = network.zero_gradients()
        reports: List[EpochReport] = []

        logger.info(
            f"Training {network} with {self.workers} worker(s), "
            f"validation={'on' if is_validating else 'off'}"
        )

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            validation_chunks = self._chunks(validation_data) if is_validating else []

            while True:
                state = self._terminal_state(epoch, failures)
                if state is not None:
                    break

                batch = batch_supplier()
                if batch is None:
                    state = TrainingState.EXHAUSTED
                    break
                batch = list(batch)
                if not batch:
                    logger.warning("Batch supplier returned an empty batch")
                    state = TrainingState.EXHAUSTED
                    break
                epoch += 1

                update = self.accumulate(pool, batch)
                batch_len = len(batch)
                train_error = update.error / batch_len

                network.update_weights(
                    update,
                    last_update,
                    batch_len,
                    conf.learning_rate,
                    conf.momentum_rate,
                    conf.regularization_param
                )
                train_cost = network.cost(
                    train_error, batch_len, conf.regularization_param
                )

                report = EpochReport(epoch=epoch, train_cost=train_cost)
                if is_validating:
                    validation_error = sum(
                        pool.map(self._chunk_validation_error, validation_chunks)
                    ) / len(validation_data)
                    new_validation_cost = network.cost(
                        validation_error,
                        len(validation_data),
                        conf.regularization_param
                    )
                    if new_validation_cost < validation_cost:
                        failures = 0
                        best_known_net = network.copy()
                        validation_cost = new_validation_cost
                    else:
                        failures += 1
                    report.validation_cost = new_validation_cost
                    report.best_validation_cost = validation_cost
                    report.validation_failures = failures

                if epoch % conf.log_period == 0:
                    logger.info(str(report))
                    reports.append(report)
                    if self.callback is not None:
                        self.callback(report)

                if conf.momentum_rate is not None:
                    last_update = update

                if self.yield_func is not None:
                    self.yield_func()

        if is_validating:
            network.restore(best_known_net)
            logger.info(
                f"Restored best validated network (cost {validation_cost})"
            )

        logger.info(f"Training ended after {epoch} epoch(s): {state.value}")
        return TrainingResult(
            state=state,
            epochs=epoch,
            train_cost=train_cost,
            best_validation_cost=validation_cost if is_validating else None,
            reports=reports
        )

    def train_autoencoder(
        self,
        batch_supplier: Callable[[], Optional[List[Sequence[float]]]],
        validation_data: Optional[List[Sequence[float]]] = None
    ) -> TrainingResult:
        """Train with every feature vector as both input and target."""
        def paired_batch() -> Optional[TrainData]:
            batch = batch_supplier()
            if batch is None:
                return None
            return [(example, example) for example in batch]

        paired_validation = None
        if validation_data is not None:
            paired_validation = [(example, example) for example in validation_data]
        return self.train(paired_batch, paired_validation)
