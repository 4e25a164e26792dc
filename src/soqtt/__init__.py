"""
soqtt — links a UNIX stream socket to a pair of MQTT topics.

Lines read from the socket are published to <prefix>/out; messages received
on <prefix>/in are written back to the socket, newline-terminated.
"""
