"""
dynsec-sync: MQTT credential lifecycle and drift repair for device fleets.

Issues Mosquitto Dynamic Security commands over the broker's $CONTROL topics,
rotates device passwords, and reconciles the device database with the broker.
"""
