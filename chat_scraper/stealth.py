"""
Browser Stealth Helpers

Randomized user agents and fingerprints for scraping sessions, plus the
page scripts injected after navigation (video suppression and navigator
property overrides).
"""

import json
import random
from dataclasses import dataclass
from typing import Dict, List, Optional

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
]

DEFAULT_USER_AGENT = USER_AGENTS[0]

# Chromium switches applied to every scraping session
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-plugins",
    "--mute-audio",
    "--no-first-run",
    "--disable-default-apps",
    "--disable-sync",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
    "--disable-blink-features=AutomationControlled",
]

FINGERPRINT_ARGS = [
    "--disable-canvas-aa",
    "--disable-2d-canvas-clip-aa",
    "--disable-gl-drawing-for-tests",
]


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int


@dataclass(frozen=True)
class BrowserFingerprint:
    """Navigator-level identity presented by one browser instance"""

    viewport: Viewport
    language: str
    timezone: str
    platform: str
    hardware_concurrency: int
    device_memory: int

    def to_js_overrides(self) -> Dict[str, str]:
        """Map navigator property paths to JavaScript literal values"""
        primary_language = self.language.split(",")[0] or "en-US"
        languages = [
            part.split(";")[0] for part in self.language.split(",") if part
        ]
        return {
            "navigator.language": json.dumps(primary_language),
            "navigator.languages": json.dumps(languages),
            "navigator.platform": json.dumps(self.platform),
            "navigator.hardwareConcurrency": str(self.hardware_concurrency),
            "navigator.deviceMemory": str(self.device_memory),
            "Intl.DateTimeFormat().resolvedOptions().timeZone": json.dumps(
                self.timezone
            ),
        }


DEFAULT_FINGERPRINT = BrowserFingerprint(
    viewport=Viewport(1920, 1080),
    language="en-US,en;q=0.9",
    timezone="America/New_York",
    platform="Win32",
    hardware_concurrency=8,
    device_memory=8,
)


class UserAgentGenerator:
    """Picks a user agent from a list of current desktop browsers"""

    def __init__(self, user_agents: Optional[List[str]] = None, rng=None):
        self.user_agents = list(user_agents or USER_AGENTS)
        self._rng = rng or random.Random()

    def random_user_agent(self) -> str:
        return self._rng.choice(self.user_agents)


class FingerprintRandomizer:
    """Generates plausible, randomized browser fingerprints"""

    VIEWPORTS = [
        Viewport(1920, 1080),
        Viewport(1366, 768),
        Viewport(1536, 864),
        Viewport(1440, 900),
        Viewport(1280, 720),
        Viewport(1600, 900),
        Viewport(2560, 1440),
    ]
    LANGUAGES = [
        "en-US,en;q=0.9",
        "en-GB,en;q=0.9",
        "en-CA,en;q=0.9",
        "en-AU,en;q=0.9",
    ]
    TIMEZONES = [
        "America/New_York",
        "America/Los_Angeles",
        "America/Chicago",
        "America/Denver",
        "Europe/London",
        "Europe/Berlin",
        "Australia/Sydney",
    ]
    PLATFORMS = ["Win32", "MacIntel", "Linux x86_64"]
    DEVICE_MEMORY = [4, 8, 16, 32]

    def __init__(self, rng=None):
        self._rng = rng or random.Random()

    def random_viewport(self) -> Viewport:
        return self._rng.choice(self.VIEWPORTS)

    def generate_fingerprint(self) -> BrowserFingerprint:
        return BrowserFingerprint(
            viewport=self.random_viewport(),
            language=self._rng.choice(self.LANGUAGES),
            timezone=self._rng.choice(self.TIMEZONES),
            platform=self._rng.choice(self.PLATFORMS),
            hardware_concurrency=self._rng.randint(4, 16),
            device_memory=self._rng.choice(self.DEVICE_MEMORY),
        )


VIDEO_DISABLE_SCRIPT = """
(() => {
    const disableVideos = () => {
        document.querySelectorAll('video').forEach((video) => {
            video.pause();
            video.removeAttribute('src');
            video.load();
            video.remove();
        });
        document
            .querySelectorAll('[data-a-target="video-player"], .video-player, .player-video, .video-ref')
            .forEach((container) => container.remove());
        if (navigator.mediaDevices && navigator.mediaDevices.getUserMedia) {
            navigator.mediaDevices.getUserMedia = () =>
                Promise.reject(new Error('Media access disabled'));
        }
    };

    disableVideos();
    if (document.body) {
        new MutationObserver((mutations) => {
            if (mutations.some((m) => m.addedNodes.length > 0)) {
                disableVideos();
            }
        }).observe(document.body, { childList: true, subtree: true });
    }
    setInterval(disableVideos, 5000);
})();
"""

_STEALTH_SCRIPT_TAIL = """
    Object.defineProperty(navigator, 'webdriver', { get: () => false });
    Object.defineProperty(navigator, 'plugins', {
        get: () => [
            { name: 'Chrome PDF Plugin', description: 'Portable Document Format' },
            { name: 'Chrome PDF Viewer', description: 'PDF Viewer' },
            { name: 'Native Client', description: 'Native Client' },
        ],
    });
    if (navigator.permissions && navigator.permissions.query) {
        const originalQuery = navigator.permissions.query.bind(navigator.permissions);
        navigator.permissions.query = (parameters) =>
            parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission })
                : originalQuery(parameters);
    }
})();
"""


def generate_stealth_script(fingerprint: BrowserFingerprint) -> str:
    """Build the navigator override script for a fingerprint"""
    lines = ["(() => {"]
    for path, value in fingerprint.to_js_overrides().items():
        if not path.startswith("navigator."):
            continue
        prop = path[len("navigator."):]
        lines.append(
            f"    Object.defineProperty(navigator, '{prop}', {{ get: () => {value} }});"
        )
    return "\n".join(lines) + _STEALTH_SCRIPT_TAIL


__all__ = [
    "USER_AGENTS",
    "DEFAULT_USER_AGENT",
    "DEFAULT_FINGERPRINT",
    "BROWSER_ARGS",
    "FINGERPRINT_ARGS",
    "Viewport",
    "BrowserFingerprint",
    "UserAgentGenerator",
    "FingerprintRandomizer",
    "VIDEO_DISABLE_SCRIPT",
    "generate_stealth_script",
]
