"""Core domain logic for geofence alerting and volunteer dispatch.

This package contains the case lifecycle, geofence monitoring and volunteer
matching engines, isolated from transport and storage so they are easy to test
and reason about.
"""
