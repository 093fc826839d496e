from .toobig import *
from .toobig import __all__
