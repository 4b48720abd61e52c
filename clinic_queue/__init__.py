"""Clinic queue dispatch engine (MQTT-based).

A kiosk issues numbered tickets, operator consoles call and serve them, TV
displays show "now serving" callouts and a mobile page reports ticket status.

The core (ticket store, queue ordering, dispatch state machine, event feed)
is pure Python and thread-safe. Components reach it over MQTT:
- a dispatch server owning the engine
- kiosk / operator / lookup clients (request/response)
- display boards and analytics listening on broadcast topics
- an optional arrival generator (Poisson arrivals) for demos

See README for how to run.
"""
