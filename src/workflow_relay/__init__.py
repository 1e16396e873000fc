"""
workflow-relay: progress relay for long-running webhook workflows.

Accepts out-of-band progress callbacks from an automation engine and
streams them to the browser connection that started the job.
"""

__version__ = "0.1.0"
