"""
Bridge daemon package for the Signal K to Venus OS pipeline.

Reads named readings from a Signal K server, maps them onto virtual Victron
devices (battery, tank, switch, environment) exported on the Venus OS D-Bus,
keeps cumulative battery history on local disk, and writes switch/dimmer
commands issued on the Venus side back to Signal K.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""
