"""Container network setup over Linux rtnetlink with macvlan, ipvlan and plugin drivers."""

__version__ = "0.1.0"