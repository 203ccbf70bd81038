"""Cascading similarity analysis over a batch of photos.

:class:`SimilarityService` owns the run state machine::

    idle -> running -> completed | cancelled | failed
    completed | cancelled | failed -> idle        (clear)

Layers run in a fixed order, cheapest first, each gated by a
``PipelineOptions.enable_*`` flag:

1. content fingerprint  (SHA-256 of the bytes; exact duplicates)
2. perceptual fingerprint  (dHash; near duplicates)
3. visual features  (embeddings; candidate set)
4. metadata proximity  (time/space/project; candidate widening)

Photos grouped by layers 1 and 2 are removed before the next layer.  The
merged candidate set of layers 3 and 4 then goes through one pairwise
pass over the embeddings.  When nothing at all was found, a caption-based
semantic fallback runs instead.

Grouping everywhere is greedy: the first unprocessed photo in input order
seeds a group and absorbs every later unprocessed photo that matches
*the seed*.  Membership therefore depends on input order and members are
not checked against each other.  This is intentional and keeps results
stable across releases.

Every outcome is returned as an :class:`AnalysisResult`; no exception
escapes :meth:`SimilarityService.analyze` or :meth:`SimilarityService.execute`.
Progress only moves forward within a run.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from photosieve.config import Settings, get_settings
from photosieve.models.fingerprint import LayerStats, VisualFeatureVector
from photosieve.models.photo import Photo
from photosieve.models.pipeline import AnalysisResult, PipelineOptions, PipelineRunState
from photosieve.models.similarity import GroupType, SimilarityGroup, SimilarityScore
from photosieve.repositories.storage import StorageBackend
from photosieve.services.batching import (
    CANCELLED_MESSAGE,
    AnalysisCancelledError,
    CancellationToken,
)
from photosieve.services.caption_service import CaptionProvider, batch_generate_descriptions
from photosieve.services.content_fingerprint import ContentFingerprinter, find_exact_duplicates
from photosieve.services.feature_extractor import FeatureExtractor
from photosieve.services.metadata_proximity import find_likely_duplicate_candidates
from photosieve.services.perceptual_hash import PerceptualHasher, find_perceptual_similarities
from photosieve.services.scoring import (
    EXACT_CONFIDENCE,
    FALLBACK_SCORE,
    PERCEPTUAL_CONFIDENCE,
    average_scores,
    clamp01,
    classify_group_type,
    make_group,
    score_pair,
)
from photosieve.services.semantic_similarity import find_description_groups
from photosieve.services.visual_features import VisualFeatureService
from photosieve.telemetry import hooks
from photosieve.telemetry.base_sink import TelemetryContext
from photosieve.telemetry.registry import TelemetryRegistry

logger = logging.getLogger(__name__)

MIN_PHOTOS_MESSAGE = "Need at least 2 photos for similarity analysis"
ALREADY_RUNNING_MESSAGE = "Analysis already in progress"

ProgressCallback = Callable[[PipelineRunState], None]
SimilarityMatrix = dict[str, dict[str, SimilarityScore]]


class AnalysisInProgressError(RuntimeError):
    """Raised by :meth:`SimilarityService.start` while another run is in flight."""


class AnalysisRun:
    """Mutable bookkeeping for the run in flight."""

    def __init__(
        self,
        run_id: str,
        photos: list[Photo],
        options: PipelineOptions,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> None:
        self.run_id = run_id
        self.photos = photos
        self.options = options
        self.token = token
        self.on_progress = on_progress
        self.context = TelemetryContext(run_id=run_id, metadata={})
        self.matrix: SimilarityMatrix = {}
        self.comparisons = 0

    def record(self, a: Photo, b: Photo, score: SimilarityScore) -> None:
        self.matrix.setdefault(a.id, {})[b.id] = score
        self.matrix.setdefault(b.id, {})[a.id] = score


class SimilarityService:
    """Runs the layer cascade and keeps the latest run's state.

    Only one run may be in flight.  A second :meth:`analyze` call while one
    is running is rejected with ``success=False``; a second :meth:`start`
    raises :class:`AnalysisInProgressError`.
    """

    def __init__(
        self,
        storage: StorageBackend,
        extractor: FeatureExtractor,
        captioner: CaptionProvider | None = None,
        telemetry: TelemetryRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.storage = storage
        self.extractor = extractor
        self.captioner = captioner
        self.telemetry = telemetry
        self._settings = settings or get_settings()
        self._state = PipelineRunState()
        self._run: AnalysisRun | None = None

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineRunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.is_analyzing

    def default_options(self) -> PipelineOptions:
        return PipelineOptions.from_settings(self._settings)

    def get_similarity_score(self, photo_a: str, photo_b: str) -> SimilarityScore | None:
        """Score recorded for the pair in the last completed run, if any."""
        return self._state.similarity_matrix.get(photo_a, {}).get(photo_b)

    def get_group_for_photo(self, photo_id: str) -> SimilarityGroup | None:
        """Group holding *photo_id* among the groups above the confidence threshold."""
        for group in self._state.filtered_groups:
            if photo_id in group.photo_ids:
                return group
        return None

    def cancel(self) -> bool:
        """Request cancellation of the run in flight; return whether one was running."""
        if self._run is None or not self.is_running:
            return False
        logger.info("Cancellation requested for analysis %s", self._run.run_id)
        self._run.token.cancel()
        return True

    def clear(self) -> bool:
        """Reset to ``idle``; refused (returns False) while a run is in flight."""
        if self.is_running:
            return False
        self._state = PipelineRunState()
        return True

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def analyze(
        self,
        photos: list[Photo],
        options: PipelineOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisResult:
        """Run the full cascade over *photos*."""
        if self.is_running:
            logger.warning("Rejected analysis request: a run is already in flight")
            return AnalysisResult(
                success=False, error=ALREADY_RUNNING_MESSAGE, state=self._state
            )

        if len(photos) < 2:
            self._state = PipelineRunState(status="failed", error=MIN_PHOTOS_MESSAGE)
            self._notify(on_progress)
            return AnalysisResult(
                success=False, error=MIN_PHOTOS_MESSAGE, state=self._state
            )

        return await self.execute(self.start(photos, options, on_progress))

    def start(
        self,
        photos: list[Photo],
        options: PipelineOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisRun:
        """Claim the service for a run and move it to ``running``.

        Nothing is awaited here, so a caller on the event loop holds the
        claim before any other request can check :attr:`is_running`.  The
        returned run must be handed to :meth:`execute`.

        Raises:
            AnalysisInProgressError: another run is in flight.
            ValueError: fewer than 2 photos.
        """
        if self.is_running:
            raise AnalysisInProgressError(ALREADY_RUNNING_MESSAGE)
        if len(photos) < 2:
            raise ValueError(MIN_PHOTOS_MESSAGE)

        run = AnalysisRun(
            uuid.uuid4().hex,
            list(photos),
            options or self.default_options(),
            CancellationToken(),
            on_progress,
        )
        self._run = run
        self._state = PipelineRunState(
            run_id=run.run_id, status="running", is_analyzing=True, progress=0.0
        )
        self._notify(on_progress)
        return run

    async def execute(self, run: AnalysisRun) -> AnalysisResult:
        """Run the cascade for a run claimed with :meth:`start`."""
        photos = run.photos
        options = run.options
        run.context.metadata = {"photo_count": len(photos)}
        self._trigger(hooks.HOOK_PIPELINE_START, context=run.context, photo_count=len(photos))
        start = time.perf_counter()

        try:
            all_groups = await self._cascade(photos, run)
        except AnalysisCancelledError:
            self._finish(run, status="cancelled", error=CANCELLED_MESSAGE)
            self._trigger(hooks.HOOK_PIPELINE_CANCELLED, context=run.context)
            return AnalysisResult(success=False, error=CANCELLED_MESSAGE, state=self._state)
        except Exception as e:
            logger.exception("Similarity analysis %s failed", run.run_id)
            message = str(e) or type(e).__name__
            self._finish(run, status="failed", error=message)
            self._trigger(hooks.HOOK_PIPELINE_ERROR, context=run.context, error=message)
            return AnalysisResult(success=False, error=message, state=self._state)

        filtered = [
            g for g in all_groups if g.confidence >= options.confidence_threshold
        ]
        self._finish(
            run,
            status="completed",
            all_groups=all_groups,
            filtered_groups=filtered,
            similarity_matrix=run.matrix,
        )
        self._trigger(
            hooks.HOOK_PIPELINE_COMPLETE,
            context=run.context,
            summary={
                "duration_ms": (time.perf_counter() - start) * 1000,
                "photo_count": len(photos),
                "groups": len(all_groups),
                "filtered_groups": len(filtered),
                "comparisons": run.comparisons,
            },
        )
        return AnalysisResult(
            success=True, groups=filtered, all_groups=all_groups, state=self._state
        )

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    async def _cascade(self, photos: list[Photo], run: AnalysisRun) -> list[SimilarityGroup]:
        options = run.options
        token = run.token

        url_for: dict[str, str] = {}
        for photo in photos:
            url = photo.image_url(options.image_uri_preference)
            if url:
                url_for[photo.id] = url
            else:
                logger.info("Photo %s has no image URL; skipping image layers", photo.id)

        groups: list[SimilarityGroup] = []
        remaining = list(photos)

        token.raise_if_cancelled()
        if options.enable_content_fingerprint:
            exact = await self._content_layer(remaining, url_for, run)
            groups.extend(exact)
            remaining = _without(remaining, exact)
        self._set_progress(run, 20)

        token.raise_if_cancelled()
        if options.enable_perceptual_fingerprint:
            near = await self._perceptual_layer(remaining, url_for, run)
            groups.extend(near)
            remaining = _without(remaining, near)
        self._set_progress(run, 35)

        token.raise_if_cancelled()
        # photos reaching the feature layer; also the fallback's sample pool
        pool = remaining

        if options.enable_visual_features:
            self.extractor.acquire()
        try:
            features: dict[str, VisualFeatureVector] = {}
            feature_candidates: list[Photo] = []
            features_service = VisualFeatureService(
                self.storage, self.extractor, options.batch_size, options.batch_delay
            )
            if options.enable_visual_features:
                features, feature_candidates = await self._feature_layer(
                    pool, url_for, features_service, run
                )
            self._set_progress(run, 60)

            token.raise_if_cancelled()
            metadata_candidates: list[Photo] = []
            if options.enable_metadata_proximity:
                metadata_candidates = self._metadata_layer(pool, run)
            self._set_progress(run, 70)

            token.raise_if_cancelled()
            candidate_ids = {p.id for p in feature_candidates} | {
                p.id for p in metadata_candidates
            }
            candidates = [p for p in pool if p.id in candidate_ids]

            if candidates:
                groups.extend(
                    self._pairwise_pass(candidates, features, features_service, run)
                )
            elif not groups and options.enable_semantic_fallback and self.captioner is not None:
                groups.extend(await self._semantic_fallback(pool, url_for, run))
            else:
                logger.info("No candidates for the pairwise pass")
        finally:
            if options.enable_visual_features:
                self.extractor.release()

        self._set_progress(run, 95)
        return groups

    async def _content_layer(
        self, photos: list[Photo], url_for: dict[str, str], run: AnalysisRun
    ) -> list[SimilarityGroup]:
        start = time.perf_counter()
        fingerprinter = ContentFingerprinter(
            self.storage, run.options.batch_size, run.options.batch_delay
        )
        hashes = await fingerprinter.hash_urls(
            [url_for.get(p.id) for p in photos], run.token
        )

        groups = []
        for members in find_exact_duplicates(photos, hashes, url_for):
            seed = members[0]
            edges = []
            for other in members[1:]:
                score = score_pair(seed, other, visual=1.0, overall=1.0)
                run.record(seed, other, score)
                edges.append(score)
            groups.append(
                make_group(
                    members,
                    average_scores(edges),
                    GroupType.EXACT_DUPLICATES,
                    EXACT_CONFIDENCE,
                )
            )

        self._emit_layer(
            run,
            LayerStats(
                layer="content_fingerprint",
                operation="sha256",
                input_count=len(photos),
                output_count=len(photos) - _member_count(groups),
                duration_ms=(time.perf_counter() - start) * 1000,
                metadata={"groups": len(groups), "hashed": len(hashes)},
            ),
        )
        return groups

    async def _perceptual_layer(
        self, photos: list[Photo], url_for: dict[str, str], run: AnalysisRun
    ) -> list[SimilarityGroup]:
        start = time.perf_counter()
        options = run.options
        hasher = PerceptualHasher(
            self.storage, options.hash_size, options.batch_size, options.batch_delay
        )
        fingerprints = await hasher.batch_fingerprint(
            [(p, url_for[p.id]) for p in photos if p.id in url_for], run.token
        )

        by_id = {p.id: p for p in photos}
        groups = []
        for members, similarities in find_perceptual_similarities(
            fingerprints, options.perceptual_threshold, run.token
        ):
            seed = by_id[members[0].photo_id]
            edges = []
            for fingerprint, similarity in zip(members[1:], similarities):
                other = by_id[fingerprint.photo_id]
                score = score_pair(seed, other, visual=similarity, overall=similarity)
                run.record(seed, other, score)
                edges.append(score)
            representative = average_scores(edges)
            groups.append(
                make_group(
                    [by_id[m.photo_id] for m in members],
                    representative,
                    classify_group_type(representative),
                    PERCEPTUAL_CONFIDENCE,
                )
            )

        self._emit_layer(
            run,
            LayerStats(
                layer="perceptual_fingerprint",
                operation=f"dhash{options.hash_size}",
                input_count=len(photos),
                output_count=len(photos) - _member_count(groups),
                duration_ms=(time.perf_counter() - start) * 1000,
                metadata={"groups": len(groups), "hashed": len(fingerprints)},
            ),
        )
        return groups

    async def _feature_layer(
        self,
        photos: list[Photo],
        url_for: dict[str, str],
        service: VisualFeatureService,
        run: AnalysisRun,
    ) -> tuple[dict[str, VisualFeatureVector], list[Photo]]:
        start = time.perf_counter()

        def on_batch_done(done: int, total: int) -> None:
            self._set_progress(run, 35 + 25 * done / max(total, 1))

        features = await service.batch_extract(
            [(p, url_for[p.id]) for p in photos if p.id in url_for],
            run.token,
            on_batch_done,
        )
        ordered = [features[p.id] for p in photos if p.id in features]
        visual_groups = service.find_visual_similarities(
            ordered, run.options.similarity_threshold, run.token
        )
        grouped = {v.photo_id for members, _ in visual_groups for v in members}
        candidates = [p for p in photos if p.id in grouped]

        self._emit_layer(
            run,
            LayerStats(
                layer="visual_features",
                operation=self.extractor.model_name,
                input_count=len(photos),
                output_count=len(candidates),
                duration_ms=(time.perf_counter() - start) * 1000,
                metadata={"extracted": len(features), "groups": len(visual_groups)},
            ),
        )
        return features, candidates

    def _metadata_layer(self, photos: list[Photo], run: AnalysisRun) -> list[Photo]:
        start = time.perf_counter()
        candidates = find_likely_duplicate_candidates(photos)
        self._emit_layer(
            run,
            LayerStats(
                layer="metadata_proximity",
                operation="candidate_widening",
                input_count=len(photos),
                output_count=len(candidates),
                duration_ms=(time.perf_counter() - start) * 1000,
            ),
        )
        return candidates

    def _pairwise_pass(
        self,
        candidates: list[Photo],
        features: dict[str, VisualFeatureVector],
        service: VisualFeatureService,
        run: AnalysisRun,
    ) -> list[SimilarityGroup]:
        """Score every candidate pair; group greedily on visual similarity."""
        start = time.perf_counter()
        threshold = run.options.similarity_threshold
        scorable = [p for p in candidates if p.id in features]
        skipped = len(candidates) - len(scorable)
        if skipped:
            logger.info("%d candidates have no embedding and are skipped", skipped)

        groups = []
        processed: set[str] = set()
        total = max(len(scorable), 1)

        for i, seed in enumerate(scorable):
            run.token.raise_if_cancelled()
            seeds_group = seed.id not in processed
            members = [seed]
            edges: list[SimilarityScore] = []
            processed.add(seed.id)

            for other in scorable[i + 1 :]:
                visual = service.compare(features[seed.id], features[other.id])
                run.comparisons += 1
                score = score_pair(seed, other, visual)
                run.record(seed, other, score)
                if seeds_group and other.id not in processed and visual >= threshold:
                    members.append(other)
                    edges.append(score)
                    processed.add(other.id)

            if len(members) > 1:
                representative = average_scores(edges)
                groups.append(
                    make_group(
                        members,
                        representative,
                        classify_group_type(representative),
                        representative.overall_similarity,
                    )
                )
            self._set_progress(run, 70 + 25 * (i + 1) / total)

        self._emit_layer(
            run,
            LayerStats(
                layer="pairwise",
                operation="cosine",
                input_count=len(candidates),
                output_count=_member_count(groups),
                duration_ms=(time.perf_counter() - start) * 1000,
                metadata={"comparisons": run.comparisons, "groups": len(groups)},
            ),
        )
        return groups

    async def _semantic_fallback(
        self, pool: list[Photo], url_for: dict[str, str], run: AnalysisRun
    ) -> list[SimilarityGroup]:
        """Caption a sample of photos and group them on description overlap."""
        assert self.captioner is not None
        start = time.perf_counter()
        options = run.options
        sample = [p for p in pool if p.id in url_for][: options.fallback_sample_size]
        if len(sample) < 2:
            return []

        logger.info("Cascade found no candidates; captioning %d photos", len(sample))
        def on_batch_done(done: int, total: int) -> None:
            self._set_progress(run, 70 + 20 * done / max(total, 1))

        descriptions = await batch_generate_descriptions(
            self.captioner,
            [(p, url_for[p.id]) for p in sample],
            batch_size=options.batch_size,
            delay=options.batch_delay,
            token=run.token,
            on_batch_done=on_batch_done,
        )
        self._set_progress(run, 90)
        run.token.raise_if_cancelled()

        by_id = {p.id: p for p in sample}
        groups = []
        for ids, similarities in find_description_groups(
            descriptions, options.semantic_threshold, run.token
        ):
            seed = by_id[ids[0]]
            edges = []
            for other_id, similarity in zip(ids[1:], similarities):
                other = by_id[other_id]
                score = score_pair(
                    seed, other, visual=FALLBACK_SCORE, overall=FALLBACK_SCORE
                ).model_copy(update={"semantic_similarity": clamp01(similarity)})
                run.record(seed, other, score)
                edges.append(score)
            groups.append(
                make_group(
                    [by_id[i] for i in ids],
                    average_scores(edges),
                    GroupType.REDUNDANT_DOCUMENTATION,
                    FALLBACK_SCORE,
                )
            )

        self._emit_layer(
            run,
            LayerStats(
                layer="semantic_fallback",
                operation="caption_jaccard",
                input_count=len(sample),
                output_count=_member_count(groups),
                duration_ms=(time.perf_counter() - start) * 1000,
                metadata={"captioned": len(descriptions), "groups": len(groups)},
            ),
        )
        return groups

    # ------------------------------------------------------------------
    # State and telemetry helpers
    # ------------------------------------------------------------------

    def _set_progress(self, run: AnalysisRun, progress: float) -> None:
        if self._run is not run:
            return
        self._state = self._state.model_copy(
            update={"progress": max(0.0, min(100.0, float(progress)))}
        )
        self._notify(run.on_progress)

    def _finish(self, run: AnalysisRun, *, status: str, **fields: Any) -> None:
        progress = 100.0 if status == "completed" else self._state.progress
        self._state = PipelineRunState(
            run_id=run.run_id,
            status=status,
            is_analyzing=False,
            progress=progress,
            **fields,
        )
        self._run = None
        self._notify(run.on_progress)

    def _notify(self, on_progress: ProgressCallback | None) -> None:
        if on_progress is None:
            return
        try:
            on_progress(self._state)
        except Exception:
            logger.exception("Progress callback raised")

    def _emit_layer(self, run: AnalysisRun, stats: LayerStats) -> None:
        # nothing is reported once the run has been cancelled
        if run.token.cancelled:
            return
        self._trigger(hooks.HOOK_LAYER_COMPLETE, context=run.context, stats=stats)

    def _trigger(self, hook_name: str, **kwargs: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.trigger_hook(hook_name, **kwargs)


def _member_count(groups: list[SimilarityGroup]) -> int:
    return sum(len(g.photos) for g in groups)


def _without(photos: list[Photo], groups: list[SimilarityGroup]) -> list[Photo]:
    grouped = {pid for g in groups for pid in g.photo_ids}
    return [p for p in photos if p.id not in grouped]
