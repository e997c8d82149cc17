"""vmconsole - supervised QEMU machine with socat console bridges

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Sessions outlive any attached UI
- Fail fast with helpful guidance

vmconsole launches one emulated machine plus four bridge processes that expose
its serial consoles as terminal sessions, and keeps them alive until the user
asks for termination.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
