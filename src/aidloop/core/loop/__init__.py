from .controller import LoopController, LoopObserver, LoopPhase, LoopState

__all__ = ["LoopController", "LoopObserver", "LoopPhase", "LoopState"]
