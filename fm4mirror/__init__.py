# FM4 Mirror
__version__ = "0.1.0"
