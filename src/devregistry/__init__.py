"""devregistry: a loopback service registry for local development workers."""

from .definitions import DurableObjectRef, WorkerDefinition, WorkerMode

__version__ = '0.1.0'
__all__ = ['DurableObjectRef', 'WorkerDefinition', 'WorkerMode']
