"""
Railflow: DAG execution of reasoning graphs with browser-backed web turns.

Runs graphs of prompt turns, transforms and gates, delegating turns that
target a web chat provider to a claim-based bridge or a headless worker.
"""

__version__ = "0.1.0"
