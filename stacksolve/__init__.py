"""
stacksolve - distributed block solver for serial-section tile stacks
"""

__version__ = "0.1.0"
