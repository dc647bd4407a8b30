"""
Stealth profile for the automated browser.

The whole evasion surface is data: launch arguments, context options and a
list of ``FingerprintPatch(property_path, value)`` entries. ``init_script``
renders the patches into one script that the browser context runs before any
page script, so target pages never observe the unpatched values.
"""

import json
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class FingerprintPatch(BaseModel):
    """Override ``window.<property_path>`` with a constant value."""
    property_path: str
    value: Any


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--window-position=0,0",
    "--ignore-certificate-errors",
    "--ignore-certificate-errors-spki-list",
    "--disable-blink-features=AutomationControlled",
]

DEFAULT_PLUGINS = [
    {"name": "Chrome PDF Plugin", "filename": "internal-pdf-viewer", "description": "Portable Document Format"},
    {"name": "Chrome PDF Viewer", "filename": "mhjfbmdgcfjbbpaeojofohoefgiehjai", "description": ""},
    {"name": "Native Client", "filename": "internal-nacl-plugin", "description": ""},
]


def default_patches() -> List[FingerprintPatch]:
    return [
        FingerprintPatch(property_path="navigator.webdriver", value=False),
        FingerprintPatch(property_path="navigator.languages", value=["en-US", "en"]),
        FingerprintPatch(property_path="navigator.plugins", value=DEFAULT_PLUGINS),
        FingerprintPatch(property_path="navigator.platform", value="MacIntel"),
        FingerprintPatch(property_path="navigator.hardwareConcurrency", value=8),
        FingerprintPatch(property_path="navigator.deviceMemory", value=8),
        FingerprintPatch(property_path="chrome", value={"runtime": {}, "app": {}}),
    ]


# WebGL debug-renderer-info constants
UNMASKED_VENDOR_WEBGL = 37445
UNMASKED_RENDERER_WEBGL = 37446

_SCRIPT_TEMPLATE = """
(() => {
  const patches = %(patches)s;
  for (const [path, value] of patches) {
    const parts = path.split('.');
    const prop = parts.pop();
    let owner = window;
    for (const part of parts) {
      owner = owner == null ? undefined : owner[part];
    }
    if (owner == null) continue;
    try {
      Object.defineProperty(owner, prop, { get: () => value, configurable: true });
    } catch (e) {}
  }

  const webgl = %(webgl)s;
  for (const ctx of [window.WebGLRenderingContext, window.WebGL2RenderingContext]) {
    if (!ctx) continue;
    const getParameter = ctx.prototype.getParameter;
    ctx.prototype.getParameter = function (parameter) {
      if (Object.prototype.hasOwnProperty.call(webgl, parameter)) {
        return webgl[parameter];
      }
      return getParameter.apply(this, [parameter]);
    };
  }
})();
"""


class StealthProfile(BaseModel):
    """Fingerprint the browser presents to target sites."""
    user_agent: str = DEFAULT_USER_AGENT
    viewport: Dict[str, int] = {"width": 1280, "height": 720}
    device_scale_factor: float = 2
    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    launch_args: List[str] = Field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    patches: List[FingerprintPatch] = Field(default_factory=default_patches)
    webgl_vendor: str = "Intel Inc."
    webgl_renderer: str = "Intel Iris OpenGL Engine"

    def context_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``Browser.new_context``."""
        return {
            "user_agent": self.user_agent,
            "viewport": dict(self.viewport),
            "device_scale_factor": self.device_scale_factor,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
        }

    def init_script(self) -> str:
        patches = [[p.property_path, p.value] for p in self.patches]
        webgl = {
            str(UNMASKED_VENDOR_WEBGL): self.webgl_vendor,
            str(UNMASKED_RENDERER_WEBGL): self.webgl_renderer,
        }
        return _SCRIPT_TEMPLATE % {
            "patches": json.dumps(patches),
            "webgl": json.dumps(webgl),
        }
