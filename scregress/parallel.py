"""
Worker pools, run configuration and progress reporting.

The degree of parallelism is resolved once per call from explicit
arguments; nothing here reads global options.
"""

import os
import warnings
from concurrent.futures import (BrokenExecutor, ProcessPoolExecutor,
                                ThreadPoolExecutor, wait)
from contextlib import contextmanager

from tqdm import tqdm

from .classes import (InvalidArgumentError, Model, RegressionConfig,
                      ResourceExhaustionWarning, WorkerPoolError)
from .utils import make_bins


BACKENDS = ('process', 'thread')


def resolve_workers(do_par=False, num_cores=1, available_cores=None):
    """Resolve the number of workers for one regression call.

    Parameters
    ----------
    do_par : bool
        Enable parallel processing. When False a single worker is used.
    num_cores : int or None
        Requested workers. ``None`` or 1 with ``do_par`` means half of the
        available cores.
    available_cores : int, optional
        Cores on the machine. Defaults to ``os.cpu_count()``.

    Returns
    -------
    int
    """
    if available_cores is None:
        available_cores = os.cpu_count() or 1
    available_cores = int(available_cores)

    if not do_par:
        if num_cores is not None and num_cores != 1:
            warnings.warn("For parallel processing, please set do_par to True.",
                          stacklevel=3)
        return 1

    if num_cores is None or num_cores == 1:
        return max(available_cores // 2, 1)
    num_cores = int(num_cores)
    if num_cores < 1:
        raise InvalidArgumentError("num_cores must be a positive integer")
    if num_cores > available_cores:
        clamped = max(available_cores - 1, 1)
        warnings.warn(
            f"num_cores set greater than number of available cores "
            f"({available_cores}). Setting num_cores to {clamped}.",
            ResourceExhaustionWarning, stacklevel=3,
        )
        return clamped
    return num_cores


def make_config(model, bin_size, do_par=False, num_cores=1, backend='process',
                display_progress=True, verbose=True, available_cores=None):
    """Validate arguments and build a frozen ``RegressionConfig``."""
    if isinstance(model, str):
        model = Model(model)
    if backend not in BACKENDS:
        raise InvalidArgumentError(
            f"backend must be one of {', '.join(BACKENDS)}, got {backend!r}")
    if int(bin_size) < 1:
        raise InvalidArgumentError("bin_size must be at least 1")
    n_workers = resolve_workers(do_par, num_cores, available_cores)
    return RegressionConfig(model=model, bin_size=int(bin_size),
                            n_workers=n_workers, backend=backend,
                            display_progress=bool(display_progress),
                            verbose=bool(verbose))


# ---------------------------------------------------------------------------
# Progress observers
# ---------------------------------------------------------------------------

class NullProgress:
    """Observer that ignores every update."""

    def start(self, total):
        pass

    def update(self, n=1):
        pass

    def close(self):
        pass


class TqdmProgress:
    """Console progress bar, one tick per bin."""

    def __init__(self, desc=None):
        self.desc = desc
        self._bar = None

    def start(self, total):
        self._bar = tqdm(total=total, desc=self.desc)

    def update(self, n=1):
        if self._bar is not None:
            self._bar.update(n)

    def close(self):
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def resolve_progress(progress, display_progress, desc=None):
    """Pick the observer: explicit one, tqdm bar, or none."""
    if progress is not None:
        return progress
    if display_progress:
        return TqdmProgress(desc=desc)
    return NullProgress()


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------

@contextmanager
def worker_pool(n_workers, backend='process'):
    """Yield an executor for one regression call, or None for serial runs.

    The executor is always shut down on exit, including when a task
    raises.
    """
    if n_workers <= 1:
        yield None
        return
    try:
        if backend == 'thread':
            executor = ThreadPoolExecutor(max_workers=n_workers)
        else:
            executor = ProcessPoolExecutor(max_workers=n_workers)
    except (OSError, ValueError) as exc:
        raise WorkerPoolError(f"cannot start {n_workers} {backend} workers: {exc}") from exc
    with executor:
        yield executor


def iter_bins(expr, fn, config, task_args, progress=None, desc=None):
    """Fit every gene of ``expr`` bin by bin.

    Bins run one after the other. Within a bin each gene is one task
    ``fn(y, *task_args(gene))``; the bin is yielded only once all of its
    tasks have finished, as a list of ``(gene, y, result)`` in gene order.
    The progress observer ticks once per bin after the caller has
    consumed it.

    Parameters
    ----------
    expr : LabeledMatrix
        Genes x cells matrix; rows are fitted in order.
    fn : callable
        Picklable task function.
    config : RegressionConfig
        Supplies bin size, worker count, backend and progress toggle.
    task_args : callable
        Maps a gene name to the extra positional arguments of ``fn``.
    progress : observer, optional
        Object with ``start``, ``update`` and ``close``.
    desc : str, optional
        Label for the default console progress bar.
    """
    genes = list(expr.row_names)
    bins = make_bins(range(len(genes)), config.bin_size)
    observer = resolve_progress(progress, config.display_progress, desc)
    observer.start(len(bins))
    try:
        with worker_pool(config.n_workers, config.backend) as executor:
            for idx in bins:
                block = expr.data[idx[0]:idx[-1] + 1].toarray()
                tasks = {genes[i]: (block[k],) + tuple(task_args(genes[i]))
                         for k, i in enumerate(idx)}
                results = run_tasks(executor, fn, tasks)
                yield [(genes[i], block[k], results[genes[i]])
                       for k, i in enumerate(idx)]
                observer.update(1)
    finally:
        observer.close()


def run_tasks(executor, fn, tasks):
    """Run ``fn(*args)`` for every ``key -> args`` in ``tasks``.

    Blocks until every task has finished and returns ``{key: result}``.
    Exceptions raised by ``fn`` propagate; a broken pool raises
    ``WorkerPoolError``.
    """
    if executor is None:
        return {key: fn(*args) for key, args in tasks.items()}
    try:
        futures = {executor.submit(fn, *args): key for key, args in tasks.items()}
        wait(futures)
        return {key: fut.result() for fut, key in futures.items()}
    except BrokenExecutor as exc:
        raise WorkerPoolError(f"worker pool failed: {exc}") from exc
