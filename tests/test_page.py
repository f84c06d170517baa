"""Tests for the interactive payment page."""

import json
import re

from lightning_gateway.page import invoice_qr_svg, render_payment_page


def render(**overrides):
    kwargs = dict(
        gateway_name="Weather API",
        price_sats=10,
        original_url="/g/gw1/forecast?city=Oslo",
        form_action="/g/gw1/forecast",
        form_params=[("city", "Oslo")],
        session_key="sk_abc",
        balance_sats=0,
        payment_request="lnbc100n1sim",
        status_url="/api/sessions/topup/t1",
    )
    kwargs.update(overrides)
    return render_payment_page(**kwargs)


def poll_config(html):
    match = re.search(r'<script type="application/json" id="topup-config">(.*?)</script>', html)
    return json.loads(match.group(1)) if match else None


def test_qr_is_inline_svg():
    assert "svg" in invoice_qr_svg("lnbc100n1sim")


def test_page_shows_invoice_and_price():
    html = render()
    assert "10 sats" in html
    assert 'href="lightning:lnbc100n1sim"' in html
    assert "sk_abc" in html
    assert '<input type="hidden" name="city" value="Oslo">' in html


def test_poll_config():
    config = poll_config(render(poll_interval_ms=500, poll_max_attempts=3))
    assert config == {
        "statusUrl": "/api/sessions/topup/t1",
        "originalUrl": "/g/gw1/forecast?city=Oslo",
        "sessionKey": "sk_abc",
        "header": "X-Session-Key",
        "queryParam": "session_key",
        "intervalMs": 500,
        "maxAttempts": 3,
    }


def test_no_invoice_means_no_polling():
    html = render(payment_request=None, status_url=None)
    assert "could not be created" in html
    assert poll_config(html) is None
    assert "lightning:" not in html


def test_escapes_user_content():
    html = render(
        gateway_name="<b>evil</b>",
        form_params=[("q", '"><script>alert(1)</script>')],
        original_url="/g/gw1/x?q=</script>",
    )
    assert "<b>evil</b>" not in html
    assert "&lt;b&gt;evil&lt;/b&gt;" in html
    assert "<script>alert(1)</script>" not in html
    assert poll_config(html)["originalUrl"] == "/g/gw1/x?q=</script>"


def test_stale_session_param_is_not_duplicated():
    html = render(form_params=[("session_key", "sk_old"), ("city", "Oslo")])
    assert "sk_old" not in html
