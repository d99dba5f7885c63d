import json
import random

from chat_scraper.stealth import (
    DEFAULT_FINGERPRINT,
    USER_AGENTS,
    FingerprintRandomizer,
    UserAgentGenerator,
    generate_stealth_script,
)


def test_user_agents_come_from_the_known_list():
    generator = UserAgentGenerator(rng=random.Random(7))
    assert all(generator.random_user_agent() in USER_AGENTS for _ in range(20))


def test_fingerprints_stay_within_plausible_values():
    randomizer = FingerprintRandomizer(rng=random.Random(3))
    for _ in range(20):
        fingerprint = randomizer.generate_fingerprint()
        assert fingerprint.viewport in FingerprintRandomizer.VIEWPORTS
        assert fingerprint.timezone in FingerprintRandomizer.TIMEZONES
        assert fingerprint.platform in FingerprintRandomizer.PLATFORMS
        assert 4 <= fingerprint.hardware_concurrency <= 16
        assert fingerprint.device_memory in FingerprintRandomizer.DEVICE_MEMORY


def test_overrides_are_javascript_literals():
    overrides = DEFAULT_FINGERPRINT.to_js_overrides()
    assert json.loads(overrides["navigator.language"]) == "en-US"
    assert json.loads(overrides["navigator.languages"]) == ["en-US", "en"]
    assert overrides["navigator.hardwareConcurrency"] == "8"


def test_stealth_script_overrides_navigator():
    script = generate_stealth_script(DEFAULT_FINGERPRINT)
    assert "Object.defineProperty(navigator, 'platform', { get: () => \"Win32\" });" in script
    assert "'webdriver'" in script
    assert "Intl.DateTimeFormat" not in script
