# Email bodies, rendered through an autoescaping jinja2 DictLoader.

_BASE = """\
<!doctype html>
<html>
<body style="font-family: Helvetica, Arial, sans-serif; color: #1f2937;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    {% block body %}{% endblock %}
    <p style="color: #6b7280; font-size: 12px; margin-top: 32px;">
      {{ site_name }}
    </p>
  </div>
</body>
</html>
"""

TEMPLATES = {
    "base.html": _BASE,

    "ticket-confirmation.html": """\
{% extends "base.html" %}
{% block body %}
<h2>Your ticket for {{ eventName }}</h2>
<p>Hi {{ userName }},</p>
<p>Show this code at the entrance.</p>
<p><img src="data:image/png;base64,{{ qrCodeBase64 }}" alt="{{ qrCode }}"
        width="220" height="220"></p>
<table>
  <tr><td>Date</td><td>{{ eventDate }}</td></tr>
  <tr><td>Venue</td><td>{{ venue }}</td></tr>
  <tr><td>Ticket type</td><td>{{ ticketType }}</td></tr>
  <tr><td>Seat</td><td>{{ seatNumber }}</td></tr>
  <tr><td>Price</td><td>{{ price }}</td></tr>
  <tr><td>Ticket</td><td>{{ ticketId }}</td></tr>
</table>
{% endblock %}
""",

    "bulk-tickets.html": """\
{% extends "base.html" %}
{% block body %}
<h2>All tickets for {{ eventName }}</h2>
<p>Hi {{ userName }},</p>
<p>Your {{ ticketCount }} tickets are attached as one PDF, one page per
seat. Each page carries its own QR code.</p>
{% endblock %}
""",

    "order-confirmation.html": """\
{% extends "base.html" %}
{% block body %}
<h2>Order confirmed</h2>
<p>Hi {{ userName }},</p>
<p>We received your payment for order <strong>{{ orderNumber }}</strong>.</p>
<table>
  <tr><td>Event</td><td>{{ eventName }}</td></tr>
  <tr><td>Tickets</td><td>{{ ticketCount }}</td></tr>
  <tr><td>Total</td><td>{{ totalAmount }}</td></tr>
</table>
{% endblock %}
""",

    "payment-failed.html": """\
{% extends "base.html" %}
{% block body %}
<h2>Payment failed</h2>
<p>Hi {{ userName }},</p>
<p>Your payment of {{ amount }} for order <strong>{{ orderNumber }}</strong>
did not go through: {{ failureReason }}.</p>
<p><a href="{{ retryLink }}">Try again</a></p>
{% endblock %}
""",

    "admin-notification.html": """\
{% extends "base.html" %}
{% block body %}
<h2>{{ title }}</h2>
<table>
{% for key, value in data.items() %}
  <tr><td><strong>{{ key }}</strong></td><td>{{ value }}</td></tr>
{% endfor %}
</table>
{% endblock %}
""",
}
