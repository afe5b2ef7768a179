"""Centralized command name constants.

The same names are used on every transport:
    - as the ``command`` field of camera-board socket frames
    - as the ``action`` field of cloud pending-command documents

Keep in sync with the device firmware's command handler.
"""

from __future__ import annotations


class CommandNames:
    """Command name constants understood by the robot."""

    # -------------------------------------------------------------------------
    # Audio
    # -------------------------------------------------------------------------

    SOUND_ALARM = "SOUND_ALARM"
    """Play the next deterrent track and wave the arms."""

    PLAY_TRACK = "PLAY_TRACK"
    NEXT_TRACK = "NEXT_TRACK"
    SET_VOLUME = "SET_VOLUME"
    STOP_AUDIO = "STOP_AUDIO"

    # -------------------------------------------------------------------------
    # Movement
    # -------------------------------------------------------------------------

    MOVE_ARMS = "MOVE_ARMS"
    STOP_MOVEMENT = "STOP_MOVEMENT"

    SET_SERVO_ANGLE = "SET_SERVO_ANGLE"
    """Value is a mapping ``{"servo": "left" | "right", "angle": degrees}``."""

    ROTATE_HEAD_LEFT = "ROTATE_HEAD_LEFT"
    ROTATE_HEAD_CENTER = "ROTATE_HEAD_CENTER"
    ROTATE_HEAD_RIGHT = "ROTATE_HEAD_RIGHT"

    # -------------------------------------------------------------------------
    # Detection and camera
    # -------------------------------------------------------------------------

    TOGGLE_DETECTION = "TOGGLE_DETECTION"
    SET_SENSITIVITY = "SET_SENSITIVITY"
    SET_BRIGHTNESS = "SET_BRIGHTNESS"
    SET_CONTRAST = "SET_CONTRAST"
    SET_RESOLUTION = "SET_RESOLUTION"
    TOGGLE_GRAYSCALE = "TOGGLE_GRAYSCALE"

    # -------------------------------------------------------------------------
    # System
    # -------------------------------------------------------------------------

    RESET_SYSTEM = "RESET_SYSTEM"

    STOP_ALL = "STOP_ALL"
    """Composite: STOP_AUDIO followed by STOP_MOVEMENT."""

    # -------------------------------------------------------------------------
    # Command Sets
    # -------------------------------------------------------------------------

    VALUE_REQUIRED = frozenset(
        {
            PLAY_TRACK,
            SET_VOLUME,
            SET_SERVO_ANGLE,
            SET_SENSITIVITY,
            SET_BRIGHTNESS,
            SET_CONTRAST,
            SET_RESOLUTION,
        }
    )
    """Commands rejected with "missing value" when called without one."""

    COMPOSITE = {STOP_ALL: (STOP_AUDIO, STOP_MOVEMENT)}
    """Composite commands and the constituents they fan out to, in order."""

    CLOUD_PARAM_KEYS = {
        SET_VOLUME: "volume",
        PLAY_TRACK: "track",
        SET_SENSITIVITY: "sensitivity",
        SET_BRIGHTNESS: "brightness",
        SET_CONTRAST: "contrast",
        SET_RESOLUTION: "resolution",
    }
    """Parameter key a scalar value is stored under in cloud command documents."""
