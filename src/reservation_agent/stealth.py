"""Device profiles and the anti-detection script injected into every session."""

from __future__ import annotations

import json
import random
from dataclasses import dataclass
from typing import List, Optional

# Recent consumer desktop browsers.
USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
]

SCREEN_RESOLUTIONS = [(1440, 900), (1680, 1050), (1920, 1080), (1536, 864), (2560, 1440)]

LANGUAGES = [["en-CA", "en", "fr-CA"], ["en-US", "en"], ["en-CA", "en"]]

# WebGL UNMASKED_VENDOR_WEBGL / UNMASKED_RENDERER_WEBGL pairs.
WEBGL_RENDERERS = [
    ("Intel Inc.", "Intel(R) Iris(TM) Plus Graphics 640"),
    ("Google Inc. (Intel)", "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Google Inc. (NVIDIA)", "ANGLE (NVIDIA, NVIDIA GeForce GTX 1660 Direct3D11 vs_5_0 ps_5_0, D3D11)"),
    ("Apple Inc.", "Apple M1"),
]

# Globals left behind by chromedriver and other automation frameworks.
AUTOMATION_MARKERS = [
    "cdc_adoQpoasnfa76pfcZLmcfl_Array",
    "cdc_adoQpoasnfa76pfcZLmcfl_Promise",
    "cdc_adoQpoasnfa76pfcZLmcfl_Symbol",
    "__webdriver_evaluate",
    "__selenium_evaluate",
    "__webdriver_script_fn",
    "__driver_evaluate",
    "_Selenium_IDE_Recorder",
    "callPhantom",
    "_phantom",
    "domAutomation",
    "domAutomationController",
]


@dataclass(frozen=True)
class DeviceProfile:
    """Fingerprint an individual session presents to the site."""

    user_agent: str
    width: int
    height: int
    languages: List[str]
    platform: str
    hardware_concurrency: int
    device_memory: int
    pixel_ratio: float
    webgl_vendor: str
    webgl_renderer: str

    @property
    def locale(self) -> str:
        return self.languages[0]


def random_device_profile(rng: Optional[random.Random] = None) -> DeviceProfile:
    """Generate a plausible consumer device profile."""
    rng = rng or random.Random()
    user_agent = rng.choice(USER_AGENTS)
    width, height = rng.choice(SCREEN_RESOLUTIONS)
    if "Windows" in user_agent:
        platform = "Win32"
        vendor, renderer = rng.choice([pair for pair in WEBGL_RENDERERS if pair[0].startswith("Google")])
    else:
        platform = "MacIntel"
        vendor, renderer = rng.choice([pair for pair in WEBGL_RENDERERS if not pair[0].startswith("Google")])
    return DeviceProfile(
        user_agent=user_agent,
        width=width,
        height=height,
        languages=list(rng.choice(LANGUAGES)),
        platform=platform,
        hardware_concurrency=rng.choice([4, 8, 8, 12, 16]),
        device_memory=rng.choice([8, 8, 16]),
        pixel_ratio=rng.choice([1.0, 2.0, 2.0]),
        webgl_vendor=vendor,
        webgl_renderer=renderer,
    )


def anti_detection_script(profile: DeviceProfile) -> str:
    """JavaScript run before any page script in every frame of a session."""
    values = json.dumps(
        {
            "languages": profile.languages,
            "language": profile.locale,
            "platform": profile.platform,
            "hardwareConcurrency": profile.hardware_concurrency,
            "deviceMemory": profile.device_memory,
            "width": profile.width,
            "height": profile.height,
            "pixelRatio": profile.pixel_ratio,
            "webglVendor": profile.webgl_vendor,
            "webglRenderer": profile.webgl_renderer,
            "markers": AUTOMATION_MARKERS,
        }
    )
    return _SCRIPT_TEMPLATE.replace("__PROFILE__", values)


_SCRIPT_TEMPLATE = """
(() => {
    const profile = __PROFILE__;
    const define = (target, name, value) => {
        try {
            Object.defineProperty(target, name, { get: () => value, configurable: true });
        } catch (e) {}
    };

    define(Navigator.prototype, 'webdriver', undefined);
    define(navigator, 'languages', Object.freeze(profile.languages.slice()));
    define(navigator, 'language', profile.language);
    define(navigator, 'platform', profile.platform);
    define(navigator, 'hardwareConcurrency', profile.hardwareConcurrency);
    define(navigator, 'deviceMemory', profile.deviceMemory);
    define(navigator, 'maxTouchPoints', 0);
    define(navigator, 'vendor', 'Google Inc.');

    const pluginData = [
        { name: 'PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chrome PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
        { name: 'Chromium PDF Viewer', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
    ];
    const plugins = pluginData.map((p) => Object.assign(Object.create(Plugin.prototype), p, { length: 1 }));
    Object.setPrototypeOf(plugins, PluginArray.prototype);
    plugins.item = (i) => plugins[i] || null;
    plugins.namedItem = (n) => plugins.find((p) => p.name === n) || null;
    plugins.refresh = () => undefined;
    define(navigator, 'plugins', plugins);

    define(screen, 'width', profile.width);
    define(screen, 'height', profile.height);
    define(screen, 'availWidth', profile.width);
    define(screen, 'availHeight', profile.height - 25);
    define(screen, 'colorDepth', 24);
    define(screen, 'pixelDepth', 24);
    define(window, 'devicePixelRatio', profile.pixelRatio);
    define(window, 'outerWidth', profile.width);
    define(window, 'outerHeight', profile.height);

    if (!window.chrome) {
        window.chrome = { runtime: {}, app: { isInstalled: false } };
    }

    if (navigator.permissions && navigator.permissions.query) {
        const originalQuery = navigator.permissions.query.bind(navigator.permissions);
        navigator.permissions.query = (parameters) =>
            parameters && parameters.name === 'notifications'
                ? Promise.resolve({ state: Notification.permission })
                : originalQuery(parameters);
    }

    const patchWebGL = (proto) => {
        if (!proto) return;
        const getParameter = proto.getParameter;
        proto.getParameter = function (parameter) {
            if (parameter === 37445) return profile.webglVendor;
            if (parameter === 37446) return profile.webglRenderer;
            return getParameter.call(this, parameter);
        };
    };
    patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
    patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);

    const toDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function () {
        const context = this.getContext('2d');
        if (context && this.width && this.height) {
            const pixel = context.getImageData(0, 0, 1, 1);
            pixel.data[3] = pixel.data[3] ^ 1;
            context.putImageData(pixel, 0, 0);
        }
        return toDataURL.apply(this, arguments);
    };

    for (const marker of profile.markers) {
        try { delete window[marker]; } catch (e) {}
    }
    for (const key of Object.keys(window)) {
        if (/^cdc_|^\\$cdc_|^__(webdriver|selenium|driver|fxdriver)/.test(key)) {
            try { delete window[key]; } catch (e) {}
        }
    }
})();
"""
