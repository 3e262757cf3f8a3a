"""agentmeter - usage metrics for AI coding assistants.

Runs an assistant behind a local proxy, follows the session file it writes,
and turns each turn into a deduplicated MetricDelta synced to a collector.
"""

from importlib.metadata import version

from agentmeter.config import MetricsConfig
from agentmeter.orchestrator import MetricsOrchestrator

__version__ = version("agentmeter")
__all__ = ["MetricsConfig", "MetricsOrchestrator", "__version__"]
