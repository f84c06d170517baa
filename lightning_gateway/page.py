"""
Interactive payment page served with browser 402 responses.

The page is self-contained: the QR code is an inline SVG and the poll loop
is inline script. Without script the invoice can still be copied by hand
and the session key pasted into the form, which resubmits the original
request with ?session_key=...
"""

from __future__ import annotations

import json
from html import escape
from typing import List, Optional, Tuple

import qrcode
import qrcode.image.svg

from .tokens import SESSION_HEADER, SESSION_QUERY_PARAM


def invoice_qr_svg(payment_request: str) -> str:
    """Inline SVG QR code for a bolt11 invoice."""
    # Upper case lets scanners use the denser alphanumeric QR mode.
    img = qrcode.make(
        "lightning:" + payment_request.upper(),
        image_factory=qrcode.image.svg.SvgPathImage,
        box_size=10,
        border=2,
    )
    return img.to_string(encoding="unicode")


_STYLE = """
body{font-family:system-ui,sans-serif;max-width:32rem;margin:2rem auto;padding:0 1rem;color:#222}
h1{font-size:1.4rem}
.qr svg{width:100%;max-width:18rem;height:auto;display:block;margin:1rem auto}
textarea{width:100%;font-family:monospace;font-size:.75rem}
code{word-break:break-all}
.status{padding:.5rem;border-radius:4px;background:#f4f4f4}
.status.paid{background:#e3f6e3}
.status.timeout,.status.error{background:#fbe9e9}
"""

_SCRIPT = """
(function () {
  var cfg = JSON.parse(document.getElementById("topup-config").textContent);
  var statusEl = document.getElementById("status");
  var attempts = 0;
  function show(cls, text) { statusEl.className = "status " + cls; statusEl.textContent = text; }
  function retry() {
    var url = new URL(cfg.originalUrl, window.location.href);
    url.searchParams.set(cfg.queryParam, cfg.sessionKey);
    window.location.replace(url.toString());
  }
  function poll() {
    attempts += 1;
    if (attempts > cfg.maxAttempts) {
      show("timeout", "Timed out waiting for payment. Reload this page once the invoice is paid.");
      return;
    }
    var headers = {};
    headers[cfg.header] = cfg.sessionKey;
    fetch(cfg.statusUrl, { headers: headers })
      .then(function (r) { return r.json(); })
      .then(function (data) {
        if (data.status === "paid") { show("paid", "Paid! Retrying your request…"); retry(); return; }
        if (data.status === "expired") { show("error", "Invoice expired. Reload for a new one."); return; }
        setTimeout(poll, cfg.intervalMs);
      })
      .catch(function () { setTimeout(poll, cfg.intervalMs); });
  }
  show("pending", "Waiting for payment…");
  setTimeout(poll, cfg.intervalMs);
})();
"""


def render_payment_page(
    *,
    gateway_name: str,
    price_sats: int,
    original_url: str,
    form_action: str,
    form_params: List[Tuple[str, str]],
    session_key: str,
    balance_sats: int,
    payment_request: Optional[str] = None,
    status_url: Optional[str] = None,
    poll_interval_ms: int = 1000,
    poll_max_attempts: int = 120,
) -> str:
    """
    Render the 402 page.

    Args:
        gateway_name: Shown in the heading.
        price_sats: Price of the request.
        original_url: URL to re-issue once paid.
        form_action: Path of the original request (manual form target).
        form_params: Original query parameters to carry through the form.
        session_key: Session that the top-up credits.
        balance_sats: Current session balance.
        payment_request: Bolt11 invoice, or None when the rail was unavailable.
        status_url: Top-up status endpoint, or None when there is no top-up.
    """
    parts = [
        "<!doctype html>",
        '<html lang="en"><head><meta charset="utf-8">',
        '<meta name="viewport" content="width=device-width,initial-scale=1">',
        f"<title>Payment required: {escape(gateway_name)}</title>",
        f"<style>{_STYLE}</style></head><body>",
        f"<h1>⚡ {escape(gateway_name)}</h1>",
        f"<p>This request costs <strong>{price_sats} sats</strong>. "
        f"Your balance is {balance_sats} sats.</p>",
    ]

    if payment_request:
        parts += [
            "<p>Scan or copy the Lightning invoice to top up:</p>",
            f'<div class="qr">{invoice_qr_svg(payment_request)}</div>',
            f'<p><a href="lightning:{escape(payment_request)}">Open in wallet</a></p>',
            f'<textarea readonly rows="5" onclick="this.select()">{escape(payment_request)}</textarea>',
        ]
    else:
        parts.append(
            '<p class="status error">A Lightning invoice could not be created right now. '
            "Reload to try again, or use a session key that already has credit.</p>"
        )

    parts += [
        f"<p>Your session key (keep it, it holds your balance):<br><code>{escape(session_key)}</code></p>",
        '<p id="status" class="status">'
        + ("Pay the invoice, then continue below." if payment_request else "")
        + "</p>",
        f'<form method="get" action="{escape(form_action)}">',
    ]
    for key, value in form_params:
        if key == SESSION_QUERY_PARAM:
            continue
        parts.append(f'<input type="hidden" name="{escape(key)}" value="{escape(value)}">')
    parts += [
        f'<label>Session key <input name="{SESSION_QUERY_PARAM}" value="{escape(session_key)}" size="40"></label> ',
        '<button type="submit">Continue</button>',
        "</form>",
    ]

    if payment_request and status_url:
        config = {
            "statusUrl": status_url,
            "originalUrl": original_url,
            "sessionKey": session_key,
            "header": SESSION_HEADER,
            "queryParam": SESSION_QUERY_PARAM,
            "intervalMs": poll_interval_ms,
            "maxAttempts": poll_max_attempts,
        }
        # "</" would end the script block early.
        config_json = json.dumps(config).replace("</", "<\\/")
        parts += [
            f'<script type="application/json" id="topup-config">{config_json}</script>',
            f"<script>{_SCRIPT}</script>",
        ]

    parts.append("</body></html>")
    return "\n".join(parts)
