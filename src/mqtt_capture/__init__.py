"""
mqtt-capture: bounded-duration MQTT message capture.

Connects to a broker, subscribes to the configured topics, captures JSON
payloads for a fixed window (reconnecting on connection loss), writes them to
a file and reports message, tag and byte throughput.
"""
