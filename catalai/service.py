"""Fassade des Decision Core für UI- und Administrationsschicht.

Verdrahtet Settings, Logging, Datenbank, LLM-Client, Matrix Store,
Pipeline und Lernkreislauf und stellt die Operationen als async
Methoden bereit.

Lifecycle:
1. DecisionService(settings)   – nur Konfiguration, keine I/O
2. await service.initialize()  – Logging, DB-Migration, Clients
3. ... Aufrufe ...
4. await service.close()
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from catalai import __version__
from catalai.cases import CaseRecord, Feedback
from catalai.clarification.models import ClarificationSession
from catalai.classifier.attributes import normalize_attributes
from catalai.classifier.pipeline import ClassificationPipeline, PipelineConfig, TurnResult
from catalai.config import Settings, get_settings
from catalai.db.database import Database
from catalai.exceptions import RetryableTurnError
from catalai.health import check_active_matrix, check_api_key_present, check_storage_writable
from catalai.learning.analyzer import LearningAnalyzer
from catalai.learning.models import (
    LearningAnalysis,
    LearningSuggestion,
    SuggestionStatus,
    ValidationTestResult,
)
from catalai.learning.storage import LearningStorage
from catalai.learning.suggestions import SuggestionWorkflow
from catalai.learning.trigger import LearningTrigger
from catalai.learning.validation import MatrixValidator
from catalai.llm.client import LLMClient, LLMCollaborator, LLMConfigError
from catalai.llm.retry import RetryPolicy
from catalai.logging_config import get_logger, setup_logging
from catalai.matrix.evaluator import evaluate
from catalai.matrix.models import (
    Category,
    Classification,
    DecisionMatrix,
    DecisionMatrixEvaluation,
    MatrixDraft,
)
from catalai.matrix.storage import SqliteMatrixRepository
from catalai.matrix.store import MatrixSaveResult, MatrixStore

logger = get_logger("app")


class DecisionService:
    """Einstiegspunkt für alle Operationen des Decision Core.

    Verwendung:
        async with DecisionService() as service:
            result = await service.start_classification("c-1", "Invoice matching ...")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        llm: LLMCollaborator | None = None,
        configure_logging: bool = True,
    ) -> None:
        self._settings = settings or get_settings()
        self._llm = llm
        self._owns_llm = llm is None
        self._configure_logging = configure_logging

        self._db: Database | None = None
        self._repository: SqliteMatrixRepository | None = None
        self._store: MatrixStore | None = None
        self._pipeline: ClassificationPipeline | None = None
        self._learning_storage: LearningStorage | None = None
        self._analyzer: LearningAnalyzer | None = None
        self._workflow: SuggestionWorkflow | None = None
        self._validator: MatrixValidator | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        settings = self._settings
        if self._configure_logging:
            setup_logging(settings.log_level.value, settings.log_dir)

        self._db = Database(settings.db_path)
        await self._db.initialize()

        if self._llm is None:
            if settings.anthropic_api_key:
                self._llm = LLMClient(
                    api_key=settings.anthropic_api_key,
                    default_model=settings.default_model,
                    max_tokens=settings.llm_max_tokens,
                )
            else:
                logger.warning(
                    "ANTHROPIC_API_KEY nicht konfiguriert – "
                    "Klassifizierung und Lern-Analyse nicht verfügbar"
                )

        policy = RetryPolicy.from_settings(settings)
        self._repository = SqliteMatrixRepository(self._db)
        self._store = MatrixStore(self._repository, llm=self._llm)
        self._learning_storage = LearningStorage(self._db)
        self._workflow = SuggestionWorkflow(self._learning_storage, self._store)
        self._validator = MatrixValidator(
            self._db,
            self._learning_storage,
            self._store,
            ratio=settings.validation_sample_ratio,
            min_sample=settings.validation_min_sample,
        )
        if self._llm is not None:
            self._pipeline = ClassificationPipeline(
                self._llm,
                self._store,
                config=PipelineConfig.from_settings(settings),
                database=self._db,
            )
            self._analyzer = LearningAnalyzer(
                self._db,
                self._learning_storage,
                self._llm,
                self._store,
                retry_policy=policy,
                trigger=LearningTrigger(
                    self._learning_storage,
                    threshold=settings.agreement_threshold,
                    min_interval_h=settings.learning_min_interval_h,
                ),
            )
        logger.info("Decision Core %s initialisiert", __version__)

    async def close(self) -> None:
        if self._owns_llm and isinstance(self._llm, LLMClient):
            await self._llm.close()
        if self._db is not None:
            await self._db.close()
        logger.info("Decision Core beendet")

    async def __aenter__(self) -> "DecisionService":
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # =========================================================================
    # Matrix
    # =========================================================================

    async def evaluate_decision_matrix(
        self,
        attributes: Mapping[str, Any],
        classification: Classification,
        version: str | None = None,
    ) -> DecisionMatrixEvaluation:
        """Regelauswertung ohne LLM, gegen die aktive oder eine bestimmte Version."""
        store = self._require(self._store)
        matrix = await (store.get_version(version) if version else store.get_active())
        return evaluate(matrix, normalize_attributes(matrix, attributes), classification)

    async def get_active_matrix(self) -> DecisionMatrix:
        return await self._require(self._store).get_active()

    async def put_active_matrix(
        self,
        draft: MatrixDraft,
        base_version: str | None = None,
        major_bump: bool = False,
    ) -> MatrixSaveResult:
        return await self._require(self._store).save(
            draft,
            base_version=base_version,
            major_bump=major_bump,
        )

    async def list_matrix_versions(self) -> list[str]:
        return await self._require(self._store).list_versions()

    async def get_matrix_version(self, version: str) -> DecisionMatrix:
        return await self._require(self._store).get_version(version)

    # =========================================================================
    # Klassifizierung
    # =========================================================================

    async def start_classification(
        self,
        case_id: str,
        description: str,
        subject: str | None = None,
    ) -> TurnResult:
        return await self._require_llm(self._pipeline).start(case_id, description, subject)

    async def submit_answers(
        self,
        session: ClarificationSession,
        answers: Sequence[str],
    ) -> TurnResult:
        return await self._require_llm(self._pipeline).answer(session, answers)

    async def force_classification(self, session: ClarificationSession) -> TurnResult:
        return await self._require_llm(self._pipeline).force_classify(session)

    async def record_feedback(
        self,
        case_id: str,
        confirmed: bool,
        corrected_category: Category | None = None,
        comments: str = "",
    ) -> tuple[CaseRecord, Optional[LearningAnalysis]]:
        """Speichert Feedback und prüft danach den automatischen Lern-Trigger.

        Raises:
            NotFoundError: Fall existiert nicht.
        """
        db = self._require(self._db)
        record = await db.record_feedback(
            case_id,
            Feedback(
                confirmed=confirmed,
                corrected_category=None if confirmed else corrected_category,
                comments=comments,
            ),
        )
        if self._analyzer is None:
            return record, None

        try:
            _, analysis = await self._analyzer.check_and_trigger()
        except RetryableTurnError as exc:
            # Feedback ist gespeichert, die Analyse folgt beim nächsten Feedback
            logger.error("Automatische Lern-Analyse fehlgeschlagen: %s", exc.to_dict())
            analysis = None
        return record, analysis

    # =========================================================================
    # Lernkreislauf
    # =========================================================================

    async def list_suggestions(
        self,
        status: SuggestionStatus | None = None,
    ) -> list[LearningSuggestion]:
        return await self._require(self._workflow).list(status)

    async def get_suggestion(self, suggestion_id: str) -> LearningSuggestion:
        return await self._require(self._workflow).get(suggestion_id)

    async def approve_suggestion(
        self,
        suggestion_id: str,
        reviewer: str,
        notes: str | None = None,
        apply: bool = True,
    ) -> LearningSuggestion:
        return await self._require(self._workflow).approve(suggestion_id, reviewer, notes, apply)

    async def reject_suggestion(
        self,
        suggestion_id: str,
        reviewer: str,
        notes: str | None = None,
    ) -> LearningSuggestion:
        return await self._require(self._workflow).reject(suggestion_id, reviewer, notes)

    async def trigger_analysis(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        misclassified_only: bool = False,
    ) -> LearningAnalysis:
        return await self._require_llm(self._analyzer).analyze(
            start=start,
            end=end,
            misclassified_only=misclassified_only,
        )

    async def list_analyses(self, limit: int = 20) -> list[LearningAnalysis]:
        """Letzte Analysen, neueste zuerst."""
        return await self._require(self._learning_storage).list_analyses(limit)

    async def validate_matrix(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ValidationTestResult:
        return await self._require(self._validator).run(start, end)

    # =========================================================================
    # Health
    # =========================================================================

    async def health(self) -> dict[str, Any]:
        """Status jeder Komponente und Gesamtstatus.

        healthy: alles ok; degraded: Speicher ok, aber kein API-Key oder
        noch keine Matrix; unhealthy: Speicher nicht beschreibbar.
        """
        api_key = check_api_key_present(self._settings)
        storage = check_storage_writable(self._settings)
        if self._repository is not None:
            matrix = await check_active_matrix(self._repository)
        else:
            matrix = {"status": "not_initialized"}

        critical_ok = storage["status"] == "ok"
        if critical_ok and api_key["status"] == "ok" and matrix["status"] == "ok":
            overall = "healthy"
        elif critical_ok:
            overall = "degraded"
        else:
            overall = "unhealthy"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "checks": {
                "anthropic_api_key": api_key,
                "storage": storage,
                "matrix": matrix,
            },
        }

    # --- Hilfsmethoden ---

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            raise RuntimeError(
                "DecisionService nicht initialisiert – "
                "await service.initialize() aufrufen"
            )
        return component

    def _require_llm(self, component: Any) -> Any:
        if self._db is None:
            self._require(None)
        if component is None:
            raise LLMConfigError(
                "ANTHROPIC_API_KEY ist nicht konfiguriert. "
                "Bitte in .env oder als Umgebungsvariable setzen."
            )
        return component
