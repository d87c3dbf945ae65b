from .pump import PumpAdapter, SimulatedPump

__all__ = ["PumpAdapter", "SimulatedPump"]
