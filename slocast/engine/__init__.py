"""
SLOCast Forecasting Engine.

Components:
- features: per-tenant success-rate features over rolling windows
- bounds: the shared bounding policy for weights, SLO targets, signal weights
- ensemble: trend / conservative / optimistic blend with a confidence interval
- risk: breach probability, risk level, suggested SLO target, advisories
"""
