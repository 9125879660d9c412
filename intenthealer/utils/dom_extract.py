from __future__ import annotations

import logging
from typing import Any

from selenium.common.exceptions import WebDriverException

from intenthealer.core.metadata import UiSnapshot

log = logging.getLogger(__name__)

CAPTURE_SNAPSHOT_SCRIPT = r"""
const limit = arguments[0] || 200;
const includeNode = (node) => {
  if (!(node instanceof Element)) return false;
  const tag = node.tagName.toLowerCase();
  if (["input", "button", "a", "select", "textarea", "label", "option"].includes(tag)) return true;
  if (node.hasAttribute("role")) return true;
  if (node.hasAttribute("data-testid")) return true;
  if (node.getAttribute("contenteditable") === "true") return true;
  if (typeof node.onclick === "function") return true;
  return false;
};

const textOf = (node) => (node ? (node.innerText || node.textContent || "").trim().slice(0, 200) : "");

const precedingLabels = (node) => {
  const labels = [];
  let sibling = node.previousElementSibling;
  while (sibling && labels.length < 2) {
    if (sibling.tagName.toLowerCase() === "label") labels.push(textOf(sibling));
    sibling = sibling.previousElementSibling;
  }
  return labels;
};

const containerPath = (node) => {
  const parts = [];
  let current = node.parentElement;
  while (current && parts.length < 4) {
    let part = current.tagName.toLowerCase();
    if (current.id) part += "#" + current.id;
    parts.unshift(part);
    current = current.parentElement;
  }
  return parts.join(" > ");
};

const roots = [document];
for (const host of Array.from(document.querySelectorAll("*")).filter((node) => node.shadowRoot)) {
  roots.push(host.shadowRoot);
}

const items = [];
collect: for (const root of roots) {
  for (const node of root.querySelectorAll("*")) {
    if (!includeNode(node)) continue;
    const rect = node.getBoundingClientRect();
    const style = window.getComputedStyle(node);
    const wrapping = node.closest("label");
    items.push({
      tag: node.tagName.toLowerCase(),
      text: textOf(node),
      value: typeof node.value === "string" ? node.value.slice(0, 200) : "",
      attributes: Array.from(node.attributes).reduce((acc, attr) => {
        acc[attr.name] = attr.value;
        return acc;
      }, {}),
      rect: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
      visible: rect.width > 0 && rect.height > 0 && style.visibility !== "hidden" && style.display !== "none",
      enabled: !node.disabled,
      nearby_labels: precedingLabels(node),
      wrapping_label: wrapping && wrapping !== node ? textOf(wrapping) : "",
      container: containerPath(node),
      options: node.tagName.toLowerCase() === "select" ? Array.from(node.options).map((option) => option.text) : [],
    });
    if (items.length >= limit) break collect;
  }
}
return {
  url: window.location.href,
  title: document.title,
  detected_language: document.documentElement.lang || "",
  elements: items,
};
"""


def snapshot_from_payload(payload: dict[str, Any] | None, url: str = "", max_elements: int | None = None) -> UiSnapshot:
    if not payload:
        return UiSnapshot(url=url)
    payload = dict(payload)
    payload.setdefault("url", url)
    if max_elements is not None:
        payload["elements"] = list(payload.get("elements") or [])[:max_elements]
    return UiSnapshot.from_payload(payload)


def capture_snapshot(driver, max_elements: int = 200) -> UiSnapshot:
    """Captures page state; driver errors degrade to a snapshot with no elements."""

    try:
        url = driver.current_url
    except WebDriverException:
        url = ""
    try:
        payload = driver.execute_script(CAPTURE_SNAPSHOT_SCRIPT, max_elements)
    except WebDriverException as exc:
        log.warning("Snapshot capture failed on %s: %s", url or "unknown page", exc.msg or exc)
        return UiSnapshot(url=url)
    return snapshot_from_payload(payload, url, max_elements)
