# src/railflow/web/__init__.py
"""Browser-side execution of web turns: provider catalogue, persistent
browser sessions, response stability extraction and the headless worker.

Submodules are imported directly (railflow.web.worker, railflow.web.client);
Playwright is only loaded by the modules that drive a browser.
"""
