"""
ScaleCam - Live decimal readout tracking

Reads a ``d.ddd`` value off a video of an LED/LCD display (scales, meters),
validates each OCR/VLM candidate, and keeps rolling mean and standard
deviation over a sliding time window.
"""

__version__ = "0.1.0"
