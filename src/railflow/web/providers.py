# src/railflow/web/providers.py
"""Provider catalogue: URLs, session signals and DOM selectors per web chat surface.

Session state is inferred from the page URL first (login signals win over
active signals); the session manager refines it with DOM markers when a
page is available.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

from railflow.contracts.enums import Provider, SessionState


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Static description of one provider's chat page."""

    provider: Provider
    home_urls: tuple[str, ...]
    active_signals: tuple[str, ...]
    login_signals: tuple[str, ...]
    host_match: Callable[[str], bool]
    input_selectors: tuple[str, ...]
    submit_selectors: tuple[str, ...]
    response_selectors: tuple[str, ...]
    generation_selectors: tuple[str, ...]


PROVIDERS: dict[Provider, ProviderConfig] = {
    Provider.GEMINI: ProviderConfig(
        provider=Provider.GEMINI,
        home_urls=("https://gemini.google.com/app", "https://gemini.google.com/"),
        active_signals=("gemini.google.com/app",),
        login_signals=("accounts.google.com",),
        host_match=lambda host: host == "gemini.google.com",
        input_selectors=(
            'textarea[aria-label*="prompt" i]',
            'div[contenteditable="true"][role="textbox"]',
            'div[contenteditable="true"][aria-label*="prompt" i]',
            "rich-textarea div[contenteditable='true']",
            "textarea",
        ),
        submit_selectors=(
            'button[aria-label*="Send" i]',
            'button:has-text("Send")',
            'button[type="submit"]',
        ),
        response_selectors=(
            '[data-message-author-role="model"]',
            "model-response",
            "main article",
            "main .markdown",
            "main .prose",
        ),
        generation_selectors=(
            'button[aria-label*="Stop" i]',
            'button[data-testid*="stop" i]',
        ),
    ),
    Provider.GPT: ProviderConfig(
        provider=Provider.GPT,
        home_urls=("https://chatgpt.com/",),
        active_signals=("chatgpt.com",),
        login_signals=("auth.openai.com", "chatgpt.com/auth"),
        host_match=lambda host: host == "chatgpt.com" or host.endswith(".chatgpt.com"),
        input_selectors=(
            "#prompt-textarea",
            'textarea[placeholder*="Message" i]',
            'div[contenteditable="true"][id*="prompt" i]',
            "textarea",
        ),
        submit_selectors=(
            'button[data-testid*="send" i]',
            'button[aria-label*="Send" i]',
            'button[type="submit"]',
        ),
        response_selectors=(
            '[data-message-author-role="assistant"]',
            'article[data-testid*="assistant" i]',
            '[data-testid*="assistant" i]',
        ),
        generation_selectors=(
            'button[data-testid*="stop" i]',
            'button[aria-label*="Stop" i]',
        ),
    ),
    Provider.GROK: ProviderConfig(
        provider=Provider.GROK,
        home_urls=("https://grok.com/",),
        active_signals=("grok.com",),
        login_signals=("accounts.x.com", "x.com/i/flow/login", "grok.com/login"),
        host_match=lambda host: host == "grok.com",
        input_selectors=(
            'textarea[placeholder*="Ask" i]',
            'div[contenteditable="true"]',
            "textarea",
        ),
        submit_selectors=(
            'button[aria-label*="Send" i]',
            'button[data-testid*="send" i]',
            'button[type="submit"]',
        ),
        response_selectors=(
            "[data-message-author-role='assistant']",
            "[data-testid*='assistant' i]",
            "[data-testid*='answer' i]",
        ),
        generation_selectors=(
            'button[data-testid*="stop" i]',
            'button[aria-label*="Stop" i]',
        ),
    ),
    Provider.PERPLEXITY: ProviderConfig(
        provider=Provider.PERPLEXITY,
        home_urls=("https://www.perplexity.ai/",),
        active_signals=("perplexity.ai",),
        login_signals=("perplexity.ai/sign-in", "perplexity.ai/login"),
        host_match=lambda host: host.endswith("perplexity.ai"),
        input_selectors=(
            'textarea[placeholder*="Ask" i]',
            'div[contenteditable="true"]',
            "textarea",
        ),
        submit_selectors=(
            'button[aria-label*="Submit" i]',
            'button[aria-label*="Send" i]',
            'button[type="submit"]',
        ),
        response_selectors=(
            "[data-testid*='answer' i]",
            "[data-message-author-role='assistant']",
        ),
        generation_selectors=(
            'button[aria-label*="Stop" i]',
            'button[data-testid*="stop" i]',
            '[data-testid*="stop" i]',
        ),
    ),
    Provider.CLAUDE: ProviderConfig(
        provider=Provider.CLAUDE,
        home_urls=("https://claude.ai/",),
        active_signals=("claude.ai",),
        login_signals=("claude.ai/login",),
        host_match=lambda host: host == "claude.ai" or host.endswith(".claude.ai"),
        input_selectors=(
            'div[contenteditable="true"][role="textbox"]',
            'textarea[placeholder*="Message" i]',
            "textarea",
        ),
        submit_selectors=(
            'button[aria-label*="Send" i]',
            'button[type="submit"]',
        ),
        response_selectors=(
            "[data-message-author-role='assistant']",
            "[data-testid*='assistant' i]",
            "[data-testid*='answer' i]",
        ),
        generation_selectors=(
            'button[aria-label*="Stop" i]',
            'button[data-testid*="stop" i]',
        ),
    ),
}

# Only these providers are driven by the headless worker; the rest need the extension.
AUTOMATED_PROVIDERS: frozenset[Provider] = frozenset({Provider.GEMINI})

# Sign-in markers shown on the page itself, independent of the URL
LOGIN_DOM_MARKERS: tuple[str, ...] = (
    'input[type="email"]',
    'button:has-text("Sign in")',
    'a:has-text("Sign in")',
    "text=/Sign in|Choose an account/i",
    "text=/This browser or app may not be secure/i",
)


def get_provider_config(provider: Provider) -> ProviderConfig:
    return PROVIDERS[provider]


def parse_provider(value: object) -> Provider | None:
    """Provider for an untrusted wire value, or None when unknown."""
    try:
        return Provider(str(value).strip().lower())
    except ValueError:
        return None


def provider_for_host(host: str) -> Provider | None:
    """Provider whose chat page is served from host."""
    host = host.strip().lower()
    for config in PROVIDERS.values():
        if config.host_match(host):
            return config.provider
    return None


def sanitize_url_for_ui(raw_url: str | None) -> str | None:
    """Origin plus path; query strings and fragments can carry conversation ids."""
    if not raw_url:
        return None
    parts = urlsplit(raw_url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}{parts.path or '/'}"


def infer_session_state(provider: Provider, url: str | None, *, context_open: bool = True) -> SessionState:
    """Session state from a (sanitized) page URL alone."""
    if not context_open or not url:
        return SessionState.UNKNOWN
    config = PROVIDERS[provider]
    lowered = url.lower()
    if any(signal in lowered for signal in config.login_signals):
        return SessionState.LOGIN_REQUIRED
    if any(signal in lowered for signal in config.active_signals):
        return SessionState.ACTIVE
    return SessionState.UNKNOWN
