"""cage-monitor: capture, store and observe coding-agent lifecycle events.

The agent runs a short-lived hook forwarder for every lifecycle event (tool
use, prompt submission, session boundaries). The forwarder relays the
event to a local collector, which appends it to a date-partitioned JSONL
store and streams it to live observers via Server-Sent Events. Nothing
leaves the machine.

Example usage::

    # Via CLI
    cage start
    echo '{"tool_name": "Read"}' | cage hook PreToolUse
    cage events --type PreToolUse

    # Programmatic usage
    from cage_monitor.main import create_app
    app = create_app()
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
