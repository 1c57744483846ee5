"""
HeartLens: real-time heart rate, HRV and signal-quality estimation from
camera video of skin (remote photoplethysmography, rPPG).

Each frame is reduced to one scalar sample; a rolling buffer of samples is
detrended, pulse-onset valleys are located, and valley-to-valley intervals
give BPM and SDNN.  A separate statistical/spectral feature vector feeds a
small pre-trained classifier that grades signal quality.
"""

__version__ = "0.1.0"
__author__ = "heartlens"
