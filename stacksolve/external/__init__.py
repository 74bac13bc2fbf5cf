"""
Tile/match metadata service capabilities used by the solver
"""

from .render_source import InMemoryRenderSource, InMemoryResultSink, RenderSource, ResultSink

__all__ = [
    'RenderSource',
    'ResultSink',
    'InMemoryRenderSource',
    'InMemoryResultSink',
]
