"""
DOM data extraction for the chapter reader.

The reader renders each page into a canvas whose component instance keeps the
page's image URL in its bound state. Everything that knows about that component
lives here; the extractor only calls the methods of ImageBinding.

Every script resolves to a non-null object so that a None from
PageEvaluator.safe_evaluate always means "context lost, no result".
"""

from typing import Any

from playwright.async_api import Page

from services.page_evaluator import PageEvaluator

# Buttons that switch the reader into "load every page" mode.
LOAD_ALL_BUTTONS = (
    "button.px-6.py-1.text-sm.bg-blue-800.font-bold.text-white",
    ".rounded-l-full.button-bare.text-white.h-8.text-xs.uppercase.font-bold.w-28.whitespace-nowrap",
)
PLACEHOLDER_SELECTOR = ".relative.w-full.h-auto"
RENDERED_SELECTOR = ".w-full.pointer-events-none.w-full"

MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}

# Shared helpers prepended to every per-page script.
_HELPERS = """
const delay = (ms) => new Promise((res) => setTimeout(res, ms));
const pageElement = (idx) => document.querySelectorAll(%(rendered)r)[idx] || null;
const bound = (el) => (el && el.__vue__) ? el.__vue__ : null;
""" % {"rendered": RENDERED_SELECTOR}

SETUP_SCRIPT = """
() => {
    for (const selector of %(buttons)s) {
        const button = document.querySelector(selector);
        if (button) button.click();
    }
    const total = document.querySelectorAll(%(placeholder)r).length;
    window.scrollTo(0, document.body.scrollHeight);
    return { total };
}
""" % {"buttons": list(LOAD_ALL_BUTTONS), "placeholder": PLACEHOLDER_SELECTOR}

COUNT_RENDERED_SCRIPT = """
() => ({ loaded: document.querySelectorAll(%(rendered)r).length })
""" % {"rendered": RENDERED_SELECTOR}

READ_SOURCE_SCRIPT = """
([idx]) => {
%(helpers)s
    const vm = bound(pageElement(idx));
    if (!vm || !vm.page || !vm.page.image_url) return { url: null };
    return { url: vm.page.image_url, order: vm.page.order ?? null };
}
""" % {"helpers": _HELPERS}

FETCH_AND_REBIND_SCRIPT = """
async ([idx, url, retries, timeoutMs]) => {
%(helpers)s
    const el = pageElement(idx);
    const vm = bound(el);
    if (!vm) return { ok: false, error: 'Element not found' };

    let response = null;
    for (let attempt = 1; attempt <= retries; attempt++) {
        try {
            response = await fetch(url, {
                cache: 'no-store',
                headers: { 'Cache-Control': 'no-cache', Pragma: 'no-cache' },
            });
            if (response.ok) break;
        } catch (err) {
            response = null;
        }
        if (attempt < retries) await delay(1000);
    }
    if (!response || !response.ok) {
        return { ok: false, error: 'Failed to fetch image (' + (response ? response.status : 'network') + ')' };
    }

    const blob = await response.blob();
    const objectURL = URL.createObjectURL(blob);
    el.dataset.objectUrl = objectURL;

    return await new Promise((resolve) => {
        const timer = setTimeout(() => resolve({ ok: false, error: 'Image load timeout' }), timeoutMs);
        vm.image.crossOrigin = 'anonymous';
        vm.image.onload = () => { clearTimeout(timer); resolve({ ok: true }); };
        vm.image.onerror = () => { clearTimeout(timer); resolve({ ok: false, error: 'Image load error' }); };
        vm.page.image_url = objectURL;
        vm.image.src = objectURL;
    });
}
""" % {"helpers": _HELPERS}

TRIGGER_REDRAW_SCRIPT = """
([idx]) => {
%(helpers)s
    const vm = bound(pageElement(idx));
    if (!vm) return { ok: false, error: 'Element not found' };
    if (typeof vm.destroyCanvas === 'function') vm.destroyCanvas();
    if (typeof vm.renderCanvas === 'function') vm.renderCanvas();
    return { ok: true };
}
""" % {"helpers": _HELPERS}

RASTERIZE_SCRIPT = """
async ([idx, mime, attempts, intervalMs]) => {
%(helpers)s
    const el = pageElement(idx);
    const vm = bound(el);
    if (!el || !vm) return { ok: false, reason: 'render', error: 'Element not found' };

    const release = () => {
        if (el.dataset.objectUrl) {
            URL.revokeObjectURL(el.dataset.objectUrl);
            delete el.dataset.objectUrl;
        }
    };

    let tries = 0;
    while (el.toDataURL('image/png') === 'data:,' && tries < attempts) {
        await delay(intervalMs);
        tries++;
    }
    if (tries >= attempts) {
        release();
        return { ok: false, reason: 'render', error: 'Canvas render timeout' };
    }

    const blob = await new Promise((resolve) => el.toBlob(resolve, mime, 0.95));
    release();
    if (!blob) return { ok: false, reason: 'encode', error: 'No blob generated' };

    const data = await new Promise((resolve) => {
        const reader = new FileReader();
        reader.onloadend = () => resolve(reader.result);
        reader.onerror = () => resolve(null);
        reader.readAsDataURL(blob);
    });
    if (!data) return { ok: false, reason: 'encode', error: 'FileReader error' };

    return { ok: true, data, pageOrder: vm.page.order ?? idx };
}
""" % {"helpers": _HELPERS}


class ImageBinding:
    """Narrow capability over the reader's bound page state."""

    def __init__(self, evaluator: PageEvaluator, codec: str = "png") -> None:
        self.evaluator = evaluator
        self.mime_type = MIME_TYPES.get(codec, "image/png")

    async def setup(self, page: Page) -> dict[str, Any] | None:
        """Trigger lazy rendering; returns {"total": <placeholder count>}."""
        return await self.evaluator.safe_evaluate(page, SETUP_SCRIPT)

    async def count_rendered(self, page: Page) -> int | None:
        result = await self.evaluator.safe_evaluate(page, COUNT_RENDERED_SCRIPT)
        if result is None:
            return None
        return int(result.get("loaded", 0))

    async def read_bound_image_source(self, page: Page, index: int) -> dict[str, Any] | None:
        """Return {"url": str | None, "order": int | None} for page `index`."""
        return await self.evaluator.safe_evaluate(page, READ_SOURCE_SCRIPT, index)

    async def fetch_and_rebind(
        self,
        page: Page,
        index: int,
        url: str,
        retries: int,
        timeout_ms: int,
    ) -> dict[str, Any] | None:
        """Fetch the image bytes in-page and bind them as the page's image source."""
        return await self.evaluator.safe_evaluate(
            page, FETCH_AND_REBIND_SCRIPT, index, url, retries, timeout_ms
        )

    async def trigger_redraw(self, page: Page, index: int) -> dict[str, Any] | None:
        return await self.evaluator.safe_evaluate(page, TRIGGER_REDRAW_SCRIPT, index)

    async def rasterize(
        self,
        page: Page,
        index: int,
        attempts: int,
        interval_ms: int,
    ) -> dict[str, Any] | None:
        """Poll for a non-empty canvas and encode it; returns a data URL on success."""
        return await self.evaluator.safe_evaluate(
            page, RASTERIZE_SCRIPT, index, self.mime_type, attempts, interval_ms
        )
