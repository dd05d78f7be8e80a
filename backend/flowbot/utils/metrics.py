# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# Every Prometheus metric the process exports; /metrics renders the default registry.

# Conversation Metrics
events_counter = Counter('flowbot_events_total', 'Inbound events dispatched', ['event_type', 'status'])
active_sessions_gauge = Gauge('flowbot_active_sessions', 'Number of live conversations')
sessions_ended_counter = Counter('flowbot_sessions_ended_total', 'Conversations removed from the store', ['reason'])
validation_failures_counter = Counter('flowbot_validation_failures_total', 'Inputs rejected by step validation', ['flow_id'])
handler_errors_counter = Counter('flowbot_handler_errors_total', 'Errors raised by user handlers or the renderer', ['kind'])

# Telegram API Metrics
telegram_requests_counter = Counter('flowbot_telegram_requests_total', 'Telegram Bot API calls', ['method', 'status'])
circuit_open_gauge = Gauge('flowbot_circuit_open', '1 while the circuit breaker for a service is open', ['service'])

# Security & Alerting Metrics
webhook_secret_counter = Counter('flowbot_webhook_secret_verifications_total', 'Webhook secret verifications', ['status'])
alerts_counter = Counter('flowbot_alerts_total', 'Critical alerts raised', ['status'])

# Performance Metrics
response_time_histogram = Histogram('flowbot_response_time_seconds', 'Response time in seconds', ['endpoint'])
