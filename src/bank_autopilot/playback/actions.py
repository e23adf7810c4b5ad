"""In-page action scripts for resolved elements.

Elements are addressed by the ref and frame stamped during resolution. Input
goes through the prototype's native ``value`` setter so that React/Vue-style
controlled components observe the change.
"""

import json

from ..resolver.snapshot import FRAME_ATTR, REF_ATTR
from ..resolver.strategies import ElementHandle

_ACTION_TEMPLATE = r"""
(function(params) {
  function docFor(frame) {
    if (!frame) return document;
    const iframe = document.querySelector('iframe[%(frame_attr)s="' + frame + '"]');
    try {
      return iframe ? iframe.contentDocument : null;
    } catch (e) {
      return null;
    }
  }
  const doc = docFor(params.frame);
  if (!doc) return {ok: false, error: 'frame not accessible'};
  const el = doc.querySelector('[%(ref_attr)s="' + params.ref + '"]');
  if (!el) return {ok: false, error: 'element no longer in page'};
  const view = doc.defaultView || window;
%(body)s
})(%(params)s)
"""

_CLICK_BODY = r"""
  el.scrollIntoView({block: 'center', inline: 'center'});
  el.click();
  return {ok: true};
"""

_INPUT_BODY = r"""
  if (el.tagName !== 'INPUT' && el.tagName !== 'TEXTAREA') {
    return {ok: false, error: 'element is not a text field: ' + el.tagName.toLowerCase()};
  }
  el.scrollIntoView({block: 'center'});
  el.focus();
  const proto = el.tagName === 'TEXTAREA' ? view.HTMLTextAreaElement.prototype : view.HTMLInputElement.prototype;
  const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
  setter.call(el, '');
  el.dispatchEvent(new view.Event('input', {bubbles: true}));
  setter.call(el, params.value);
  el.dispatchEvent(new view.Event('input', {bubbles: true}));
  el.dispatchEvent(new view.KeyboardEvent('keydown', {bubbles: true}));
  el.dispatchEvent(new view.KeyboardEvent('keyup', {bubbles: true}));
  el.dispatchEvent(new view.Event('change', {bubbles: true}));
  el.blur();
  return {ok: true};
"""

_SELECT_BODY = r"""
  if (el.tagName !== 'SELECT') return {ok: false, error: 'element is not a select'};
  const options = Array.from(el.options || []);
  const option = options.find(function(o) { return o.value === params.value; }) ||
    options.find(function(o) { return (o.textContent || '').trim() === params.value; });
  if (!option) return {ok: false, error: 'option not found'};
  el.value = option.value;
  el.dispatchEvent(new view.Event('input', {bubbles: true}));
  el.dispatchEvent(new view.Event('change', {bubbles: true}));
  return {ok: true};
"""


def _render(body: str, handle: ElementHandle, **extra: str | None) -> str:
    params = {"ref": handle.ref, "frame": handle.frame, **extra}
    return _ACTION_TEMPLATE % {
        "frame_attr": FRAME_ATTR,
        "ref_attr": REF_ATTR,
        "body": body,
        "params": json.dumps(params),
    }


def click_script(handle: ElementHandle) -> str:
    return _render(_CLICK_BODY, handle)


def input_script(handle: ElementHandle, value: str) -> str:
    return _render(_INPUT_BODY, handle, value=value)


def select_script(handle: ElementHandle, value: str | None) -> str:
    return _render(_SELECT_BODY, handle, value=value or "")
