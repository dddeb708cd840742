import pytest

import groq_safe
import llm_tasks
import observability


@pytest.fixture(autouse=True)
def _isolate_side_channels(tmp_path, monkeypatch):
    """Keep metrics out of the working tree and reset process-wide Groq state."""

    observability.set_metrics_path(str(tmp_path / "metrics.csv"))
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    groq_safe.reset_auth_state()
    llm_tasks.reset_soft_limits()
    yield
    groq_safe.reset_auth_state()
    llm_tasks.reset_soft_limits()
