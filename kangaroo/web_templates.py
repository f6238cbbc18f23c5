#!/usr/bin/env python3
"""
=====================================================================
Cloudy Kangaroo HTML Templates
=====================================================================
Inline Jinja templates rendered with render_template_string, plus the
two filters they use. Every page gets ``user`` and ``csrf_token`` from
the pipeline's context processor.

The dashboard's silence/escalate buttons call the JSON API with the
CSRF token in the X-CSRF-Token header. Silence durations are entered
in hours and checked against MAX_SILENCE_HOURS before any request is
sent.
=====================================================================
"""

from datetime import datetime, timezone
from typing import Any

EVENT_CLASSES = {0: "success", 1: "warning", 2: "danger"}


def event_class(status: Any) -> str:
    """CSS class for a Sensu check status (0 ok, 1 warning, 2 critical)."""
    try:
        return EVENT_CLASSES.get(int(status), "unknown")
    except (TypeError, ValueError):
        return "unknown"


def format_timestamp(value: Any) -> str:
    if value in (None, ""):
        return "never"
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return str(value)


def register_filters(app) -> None:
    app.add_template_filter(event_class, "event_class")
    app.add_template_filter(format_timestamp, "format_timestamp")


_HEAD = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta name="csrf-token" content="{{ csrf_token }}">
    <title>{{ title }}</title>
    <style>
        :root {
            --bg-color: #1a1a1a;
            --card-color: #2c2c2c;
            --text-color: #f0f0f0;
            --accent-color: #00bcd4;
            --success-color: #4caf50;
            --warning-color: #ff9800;
            --error-color: #f44336;
            --font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif;
        }
        body { font-family: var(--font-family); background: var(--bg-color); color: var(--text-color); margin: 0; padding: 24px; }
        nav { display: flex; gap: 16px; align-items: center; margin-bottom: 24px; }
        nav a { color: var(--accent-color); text-decoration: none; }
        nav .spacer { flex: 1; }
        h1 { color: var(--accent-color); font-weight: 500; }
        .card { background: var(--card-color); border-radius: 8px; padding: 16px; margin-bottom: 16px; }
        table { width: 100%; border-collapse: collapse; }
        th, td { text-align: left; padding: 8px; border-bottom: 1px solid #444; vertical-align: top; }
        tr.success td:first-child { border-left: 4px solid var(--success-color); }
        tr.warning td:first-child { border-left: 4px solid var(--warning-color); }
        tr.danger td:first-child { border-left: 4px solid var(--error-color); }
        .flash { padding: 8px 12px; border-radius: 4px; margin-bottom: 12px; background: #333; }
        .flash.error { border-left: 4px solid var(--error-color); }
        .flash.info { border-left: 4px solid var(--accent-color); }
        .error { color: var(--error-color); }
        button { background: var(--accent-color); border: 0; border-radius: 4px; color: #000; padding: 4px 10px; cursor: pointer; }
        button.secondary { background: #666; color: var(--text-color); }
        input { padding: 6px; border-radius: 4px; border: 1px solid #555; background: #222; color: var(--text-color); }
        pre { white-space: pre-wrap; margin: 0; }
    </style>
</head>
<body>
    <nav>
        <strong>{{ title }}</strong>
        <a href="/">Events</a>
        <a href="/devices">Devices</a>
        <span class="spacer"></span>
        {% if user %}
            <a href="/account">{{ user.display_name or user.username }}</a>
            <a href="/account/logout">Log out</a>
        {% else %}
            <a href="/account/login">Log in</a>
        {% endif %}
    </nav>
    {% with messages = get_flashed_messages(with_categories=true) %}
        {% for category, message in messages %}
            <div class="flash {{ category }}">{{ message }}</div>
        {% endfor %}
    {% endwith %}
"""

_FOOT = """
</body>
</html>
"""

HTML_LOGIN = _HEAD + """
    <div class="card" style="max-width: 360px;">
        <h1>Log in</h1>
        <form method="post" action="/account/login">
            <input type="hidden" name="_csrf" value="{{ csrf_token }}">
            <input type="hidden" name="next" value="{{ next_url }}">
            <p><input name="username" placeholder="Username" value="{{ username or '' }}" autofocus></p>
            <p><input name="password" type="password" placeholder="Password"></p>
            <p><button type="submit">Log in</button></p>
        </form>
    </div>
""" + _FOOT

HTML_ACCOUNT = _HEAD + """
    <div class="card">
        <h1>{{ user.display_name or user.username }}</h1>
        <table>
            <tr><th>Username</th><td>{{ user.username }}</td></tr>
            <tr><th>Email</th><td>{{ user.email or '' }}</td></tr>
            <tr><th>Groups</th><td>{{ user.groups | sort | join(', ') }}</td></tr>
        </table>
    </div>
""" + _FOOT

HTML_DASHBOARD = _HEAD + """
    <h1>Current Events</h1>
    {% if error %}<div class="card error">{{ error }}</div>{% endif %}
    <div class="card">
        <table>
            <thead>
                <tr><th>Client</th><th>Check</th><th>Output</th><th>Occurrences</th><th>Actions</th></tr>
            </thead>
            <tbody>
            {% for event in events %}
                {% set client = event.client.name %}
                {% set check = event.check.name %}
                <tr class="{{ event.check.status | event_class }}">
                    <td><a href="/device/{{ client }}">{{ client }}</a></td>
                    <td>{{ check }}</td>
                    <td><pre>{{ event.check.output }}</pre></td>
                    <td>{{ event.occurrences }}</td>
                    <td>
                        {% if event.silenced %}
                            <button class="secondary" onclick="unsilence('{{ event.silenced }}')">Unsilence</button>
                        {% else %}
                            <button onclick="silence('{{ client }}', '{{ check }}')">Silence check</button>
                            <button onclick="silence('{{ client }}', false)">Silence client</button>
                        {% endif %}
                        <button class="secondary" onclick="escalate({{ loop.index0 }})">Escalate</button>
                    </td>
                </tr>
            {% else %}
                <tr><td colspan="5">No current events.</td></tr>
            {% endfor %}
            </tbody>
        </table>
    </div>
    <script>
        const MAX_SILENCE_HOURS = {{ max_silence_hours }};
        const DEFAULT_SILENCE_HOURS = {{ default_silence_hours }};
        const EVENTS = {{ events | tojson }};
        const CSRF = document.querySelector('meta[name="csrf-token"]').content;

        function silenceUri(client, check) {
            let uri = '/api/v1/sensu/silence/client/' + encodeURIComponent(client);
            if (check && check !== 'false') {
                uri += '/check/' + encodeURIComponent(check);
            }
            return uri;
        }

        async function send(method, uri, body) {
            const resp = await fetch(uri, {
                method: method,
                headers: {'X-CSRF-Token': CSRF, 'Content-Type': 'application/x-www-form-urlencoded'},
                credentials: 'same-origin',
                body: body
            });
            if (!resp.ok) {
                alert(method + ' ' + uri + ' failed: HTTP ' + resp.status);
                return null;
            }
            return resp;
        }

        async function silence(client, check) {
            const result = prompt('Silence for how many hours? (max ' + MAX_SILENCE_HOURS + ')', DEFAULT_SILENCE_HOURS);
            if (result === null) {
                return;
            }
            const hours = parseInt(result, 10);
            if (isNaN(hours) || hours <= 0 || hours > MAX_SILENCE_HOURS) {
                alert('Silence duration must be between 1 and ' + MAX_SILENCE_HOURS + ' hours.');
                return;
            }
            if (await send('POST', silenceUri(client, check), 'expires=' + (hours * 3600))) {
                location.reload();
            }
        }

        async function unsilence(stash) {
            const parts = stash.split('/');
            if (await send('DELETE', silenceUri(parts[0], parts[1]), null)) {
                location.reload();
            }
        }

        async function escalate(index) {
            const ticketID = prompt('Ubersmith ticket ID');
            if (!ticketID) {
                return;
            }
            const documentation = prompt('Notes for the ticket', '') || '';
            const body = new URLSearchParams({
                ticketID: ticketID,
                subject: 'Monitoring System Escalated Event',
                sensuEvent: JSON.stringify(EVENTS[index], null, 2),
                documentation: documentation,
                visible: 1,
                time_spent: 1
            });
            const resp = await send('POST', '/api/v1/ubersmith/tickets/ticketid/' + encodeURIComponent(ticketID) + '/posts', body);
            if (!resp) {
                return;
            }
            const reply = await resp.json();
            alert(reply.status ? 'Event added to ticket ' + ticketID : 'Ubersmith error: ' + reply.error_message);
        }
    </script>
""" + _FOOT

HTML_DEVICES = _HEAD + """
    <h1>Devices</h1>
    <div class="card">
        <table>
            <thead>
                <tr><th>Hostname</th><th>OS</th><th>IP address</th><th>Monitored</th><th>Billed</th><th>Last report</th></tr>
            </thead>
            <tbody>
            {% for row in rows %}
                <tr class="{{ 'success' if row.monitored else 'warning' }}">
                    <td><a href="/device/{{ row.hostname }}">{{ row.hostname }}</a></td>
                    <td>{{ row.operatingsystem or '' }}</td>
                    <td>{{ row.ipaddress or '' }}</td>
                    <td>{{ 'yes' if row.monitored else 'no' }}</td>
                    <td>{{ 'yes' if row.billed else 'no' }}</td>
                    <td>{{ row.report_timestamp | format_timestamp }}</td>
                </tr>
            {% else %}
                <tr><td colspan="6">No Linux nodes reported by PuppetDB.</td></tr>
            {% endfor %}
            </tbody>
        </table>
    </div>
""" + _FOOT

HTML_DEVICE = _HEAD + """
    <h1>{{ hostname }}</h1>
    <div class="card">
        <h2>Monitoring</h2>
        {% if sensu.error %}<p class="error">{{ sensu.error }}</p>{% endif %}
        {% if sensu.node %}
            <p>Address: {{ sensu.node.address }} &middot; Subscriptions: {{ (sensu.node.subscriptions or []) | join(', ') }}</p>
            <p>Last keepalive: {{ sensu.node.timestamp | format_timestamp }}</p>
        {% endif %}
        <table>
            <thead><tr><th>Check</th><th>Output</th><th>Occurrences</th></tr></thead>
            <tbody>
            {% for event in sensu.events or [] %}
                <tr class="{{ event.check.status | event_class }}">
                    <td>{{ event.check.name }}</td>
                    <td><pre>{{ event.check.output }}</pre></td>
                    <td>{{ event.occurrences }}</td>
                </tr>
            {% else %}
                <tr><td colspan="3">No current events.</td></tr>
            {% endfor %}
            </tbody>
        </table>
    </div>
    <div class="card">
        <h2>Inventory</h2>
        {% if puppet.error %}<p class="error">{{ puppet.error }}</p>{% endif %}
        {% if puppet.node %}
            <p>Catalog: {{ puppet.node.catalog_timestamp | format_timestamp }} &middot;
               Facts: {{ puppet.node.facts_timestamp | format_timestamp }} &middot;
               Report: {{ puppet.node.report_timestamp | format_timestamp }}</p>
        {% endif %}
        <table>
            <tbody>
            {% for fact in facts %}
                <tr><th>{{ fact.name }}</th><td>{{ fact.value }}</td></tr>
            {% endfor %}
            </tbody>
        </table>
    </div>
""" + _FOOT

HTML_ERROR = _HEAD + """
    <div class="card">
        <h1>{{ heading }}</h1>
        <p class="error">{{ message }}</p>
        {% if request_id %}<p>Request ID: <code>{{ request_id }}</code></p>{% endif %}
    </div>
""" + _FOOT
