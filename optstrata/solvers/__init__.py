from .optimal import OptimalMatchSolver

__all__ = ["OptimalMatchSolver"]
