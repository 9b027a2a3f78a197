"""Group classified textures by recipe and run the converter over them.

Jobs are independent. A fixed-size thread pool pulls them from one
queue; the collecting thread stores every result in the completion cache
before it tells the observer, so a reported job is always a cached job.
"""

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import (
    FORMAT_BY_TYPE,
    LOW_FORMAT_PRESETS,
    PRESET_MIN_DIMENSION,
    QUALITY_PRESETS,
    SINGLE_MIP_TYPES,
    PipelineConfig,
    TargetFormat,
    TextureType,
)
from ..errors import CacheError, ConversionError, DecodeError
from ..core.cache import CompletionCache
from ..core.classify import is_compressed_format
from ..core.exclusions import ExclusionMatcher
from ..core.paths import get_output_path
from ..core.records import (
    JobResult,
    JobStatus,
    OptimizationJob,
    ProgressEvent,
    Recipe,
    ResizePolicy,
    RunSummary,
    TextureAsset,
)
from .convert import Converter

logger = logging.getLogger("texture_optimizer.optimize")

CANCELLED_DETAIL = "cancelled"
OPTIMAL_DETAIL = "already optimal"
DRY_RUN_DETAIL = "dry run"


def _build_recipe_table() -> Dict[Tuple[str, TextureType], Recipe]:
    table = {}
    for preset, limits in QUALITY_PRESETS.items():
        low = preset in LOW_FORMAT_PRESETS
        min_dim = PRESET_MIN_DIMENSION[preset]
        single_mip = SINGLE_MIP_TYPES[preset]
        for tex_type in TextureType:
            regular, low_fmt = FORMAT_BY_TYPE[tex_type]
            table[(preset, tex_type)] = Recipe(
                target_format=low_fmt if low else regular,
                resize=ResizePolicy(
                    max_dimension=limits[tex_type.value],
                    min_dimension=min_dim,
                    keep_mips=tex_type not in single_mip,
                ),
            )
    return table


RECIPE_TABLE: Dict[Tuple[str, TextureType], Recipe] = _build_recipe_table()


def select_recipe(asset: TextureAsset, preset: str) -> Recipe:
    """Pick the recipe of ``asset`` under ``preset``.

    Uncompressed OTHER textures with alpha are composites whose alpha
    channel carries data; they stay uncompressed and are only resized.
    """
    recipe = RECIPE_TABLE[(preset, asset.texture_type)]
    header = asset.header
    if (asset.texture_type is TextureType.OTHER and header.has_alpha
            and not is_compressed_format(header.pixel_format)):
        return Recipe(target_format=TargetFormat.RGBA, resize=recipe.resize)
    return recipe


def is_already_optimal(asset: TextureAsset, recipe: Recipe) -> bool:
    """Source already has the target format, mip layout and size."""
    header = asset.header
    if header.pixel_format != recipe.target_format.value:
        return False
    if not recipe.resize.keep_mips and header.mip_count > 1:
        return False
    return recipe.resize.target_size(header.width, header.height) == (header.width, header.height)


class BatchScheduler:
    """Plan and execute optimization jobs under bounded concurrency."""

    def __init__(
        self,
        config: PipelineConfig,
        materializer,
        converter: Optional[Converter] = None,
        cache: Optional[CompletionCache] = None,
        exclusions: Optional[ExclusionMatcher] = None,
        observer: Optional[Callable[[ProgressEvent], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """``materializer`` provides ``materialize(entry, dest_dir)``."""
        self.config = config
        self.materializer = materializer
        self.converter = converter or Converter(config.converter)
        self.cache = cache
        self.exclusions = exclusions
        self.observer = observer
        self.cancel_event = cancel_event or threading.Event()
        self.invocations = 0
        self._invocation_lock = threading.Lock()
        self.excluded: List[str] = []

    @property
    def staging_dir(self) -> str:
        return self.config.optimize.staging_dir or os.path.join(
            self.config.output_dir, ".staging"
        )

    def request_cancel(self):
        """No new job starts after this; running invocations finish."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, assets: Iterable[TextureAsset]) -> Dict[Recipe, List[OptimizationJob]]:
        """Group non-excluded assets by recipe.

        Excluded paths are recorded in ``self.excluded`` and never become
        jobs. Batches and the jobs inside them are ordered by logical path.
        """
        preset = self.config.optimize.preset
        batches: Dict[Recipe, List[OptimizationJob]] = {}
        self.excluded = []
        for asset in sorted(assets, key=lambda a: a.logical_path):
            if self.exclusions is not None:
                rule = self.exclusions.match_rule(asset.logical_path)
                if rule is not None:
                    logger.debug("Excluded %s (rule '%s')", asset.logical_path, rule.pattern)
                    self.excluded.append(asset.logical_path)
                    continue
            recipe = select_recipe(asset, preset)
            batches.setdefault(recipe, []).append(OptimizationJob(
                asset=asset,
                recipe=recipe,
                output_path=get_output_path(asset.logical_path, self.config.output_dir, ".dds"),
            ))
        logger.info(
            "Planned %d job(s) in %d batch(es); %d excluded",
            sum(len(j) for j in batches.values()), len(batches), len(self.excluded),
        )
        for recipe, jobs in batches.items():
            logger.debug("Batch %s: %d job(s)", recipe.recipe_id, len(jobs))
        return batches

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, assets: Iterable[TextureAsset]) -> RunSummary:
        """Execute every planned job and return the run summary."""
        batches = self.plan(assets)
        jobs = [job for batch in batches.values() for job in batch]
        total = len(jobs)
        results: List[JobResult] = []
        errors: List[str] = []

        def _record(result: JobResult):
            # Cache first, then report.
            if (self.cache is not None and result.status is not JobStatus.SKIPPED
                    and not result.cached):
                self.cache.put(result.fingerprint, result.recipe_id, result)
            results.append(result)
            if result.status is JobStatus.FAILED:
                errors.append(f"{result.logical_path}: {result.error}")
            self._notify(ProgressEvent(
                completed=len(results), total=total,
                current_asset=result.logical_path, errors=tuple(errors),
            ))

        to_dispatch: List[OptimizationJob] = []
        for job in jobs:
            pre = self._pre_dispatch(job)
            if pre is not None:
                _record(pre)
            else:
                to_dispatch.append(job)

        if self.config.dry_run:
            for job in to_dispatch:
                logger.info("[DRY RUN] would convert %s -> %s",
                            job.asset.logical_path, job.recipe.recipe_id)
                _record(self._result(job, JobStatus.SKIPPED, DRY_RUN_DETAIL))
            to_dispatch = []

        if to_dispatch:
            self._dispatch(to_dispatch, _record)

        if self.cache is not None:
            try:
                self.cache.save()
            except CacheError as exc:
                logger.error("Completion cache not persisted: %s", exc)

        return self.summarize(results, cancelled=self.cancel_event.is_set())

    def _dispatch(self, jobs: List[OptimizationJob], record: Callable[[JobResult], None]):
        workers = self.config.resolve_workers()
        logger.info("Dispatching %d job(s) to %d worker(s)", len(jobs), workers)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="textrim")
        try:
            futures = {executor.submit(self._execute, job): job for job in jobs}
            pending = set(futures)
            cancel_handled = False
            while pending:
                if self.cancel_event.is_set() and not cancel_handled:
                    cancel_handled = True
                    dropped = 0
                    for future in sorted(pending, key=lambda f: futures[f].asset.logical_path):
                        if future.cancel():
                            pending.discard(future)
                            record(self._result(futures[future], JobStatus.SKIPPED, CANCELLED_DETAIL))
                            dropped += 1
                    logger.warning("Cancellation requested: %d queued job(s) dropped", dropped)
                    if not pending:
                        break
                done, pending = wait(pending, timeout=0.2, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: futures[f].asset.logical_path):
                    job = futures[future]
                    try:
                        result = future.result()
                    except Exception as exc:
                        logger.error("Job %s crashed: %s", job.asset.logical_path,
                                     exc, exc_info=True)
                        result = self._result(job, JobStatus.FAILED, str(exc))
                    record(result)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _pre_dispatch(self, job: OptimizationJob) -> Optional[JobResult]:
        """Resolve a job without the converter when the cache or source allows it."""
        if self.cache is not None:
            hit = self.cache.get(job.fingerprint, job.recipe.recipe_id)
            if (hit is not None and hit.status is JobStatus.SUCCESS
                    and os.path.isfile(job.output_path)):
                logger.debug("Cache hit: %s", job.asset.logical_path)
                hit.cached = True
                hit.output_path = job.output_path
                return hit
        if self.config.optimize.skip_optimal and is_already_optimal(job.asset, job.recipe):
            logger.debug("Already optimal: %s", job.asset.logical_path)
            return self._result(job, JobStatus.SKIPPED, OPTIMAL_DETAIL)
        return None

    def _execute(self, job: OptimizationJob) -> JobResult:
        """Worker body: materialize, convert with retries, place output."""
        path = job.asset.logical_path
        if self.cancel_event.is_set():
            return self._result(job, JobStatus.SKIPPED, CANCELLED_DETAIL)

        try:
            source = self.materializer.materialize(job.asset.source, self.staging_dir)
        except (DecodeError, OSError) as exc:
            logger.warning("Cannot read source of %s: %s", path, exc)
            return self._result(job, JobStatus.FAILED, f"source unreadable: {exc}")

        header = job.asset.header
        size = job.recipe.resize.target_size(header.width, header.height)
        target_size = size if size != (header.width, header.height) else None
        out_dir = os.path.dirname(job.output_path)
        max_attempts = self.config.optimize.retries + 1
        last_error = ""
        try:
            for attempt in range(1, max_attempts + 1):
                if attempt > 1 and self.cancel_event.is_set():
                    return self._result(job, JobStatus.FAILED, last_error, attempt - 1)
                with self._invocation_lock:
                    self.invocations += 1
                try:
                    produced = self.converter.convert(source, out_dir, job.recipe, target_size)
                    if os.path.normcase(produced) != os.path.normcase(job.output_path):
                        os.replace(produced, job.output_path)
                    logger.debug("Converted %s (%s)", path, job.recipe.recipe_id)
                    return self._result(job, JobStatus.SUCCESS, "", attempt)
                except (ConversionError, OSError) as exc:
                    last_error = str(exc)
                    level = logging.WARNING if attempt < max_attempts else logging.ERROR
                    logger.log(level, "Attempt %d/%d failed for %s: %s",
                               attempt, max_attempts, path, exc)
            return self._result(job, JobStatus.FAILED, last_error, max_attempts)
        finally:
            if not job.asset.source.is_loose:
                try:
                    os.remove(source)
                except OSError:
                    pass

    @staticmethod
    def _result(job: OptimizationJob, status: JobStatus, error: str = "",
                attempts: int = 0) -> JobResult:
        return JobResult(
            logical_path=job.asset.logical_path,
            status=status,
            fingerprint=job.fingerprint,
            recipe_id=job.recipe.recipe_id,
            error=error,
            attempts=attempts,
            output_path=job.output_path if status is JobStatus.SUCCESS else "",
        )

    def _notify(self, event: ProgressEvent) -> None:
        if self.observer is None:
            return
        try:
            self.observer(event)
        except Exception:
            logger.debug("Progress observer failed.", exc_info=True)

    def summarize(self, results: List[JobResult], cancelled: bool = False) -> RunSummary:
        summary = RunSummary(
            total_jobs=len(results),
            excluded=len(self.excluded),
            cancelled=cancelled,
            results=sorted(results, key=lambda r: r.logical_path),
        )
        for result in summary.results:
            if result.status is JobStatus.FAILED:
                summary.failed += 1
                summary.failures.append((result.logical_path, result.error))
            elif result.status is JobStatus.SKIPPED:
                summary.skipped += 1
            elif result.cached:
                summary.cached += 1
            else:
                summary.succeeded += 1
        return summary
