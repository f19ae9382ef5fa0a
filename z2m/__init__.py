"""Zigbee2MQTT connection, topology tracking and value cache for the z2m-poly NodeServer."""
