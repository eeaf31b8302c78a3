import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from backend.routes import router
from scenario_continuity.config import EvaluationSettings, build_llm, load_settings
from scenario_continuity.judge import LLMJudge, SemanticJudge
from scenario_continuity.orchestrator import ScenarioConsistencyService
from scenario_continuity.storage import ScenarioStore

load_dotenv(Path(__file__).parent.parent / ".env")


def create_app(
    data_dir: Path | None = None,
    judge: SemanticJudge | None = None,
    settings: EvaluationSettings | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(settings.data_dir)))

    app = FastAPI(title="Scenario Continuity")
    app.state.settings = settings
    app.state.scenarios = ScenarioStore(resolved)
    app.state.service = ScenarioConsistencyService(
        judge or LLMJudge(build_llm(settings)),
        scenarios=app.state.scenarios,
        settings=settings,
    )
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
