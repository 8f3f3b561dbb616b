"""
fleetwatch - coordinated OS updates for Kubernetes nodes
"""
__version__ = '0.1.0'
