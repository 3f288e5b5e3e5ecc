import numpy as np

from wannier_gauge.optimize import ConvergenceReport, OptimizationStatus, minimize_gauge


def _capped_parabola(X: np.ndarray):
    # the generator always points towards +x, so fixed steps walk past the minimum at 0
    return float(min(X[0] ** 2, 1.0)), np.ones(1)


def _walk(X: np.ndarray, D: np.ndarray, t: float) -> np.ndarray:
    return X - t * D


def test_fixed_step_convergence_returns_lowest_point() -> None:
    X, report = minimize_gauge(
        _capped_parabola,
        _walk,
        np.array([1.0]),
        max_iterations=20,
        convergence_tolerance=1e-3,
        gradient_tolerance=1e-8,
        step_size=0.5,
        convergence_window=2,
        conjugate_gradient=False,
        line_search=False,
        divergence_factor=1e6,
    )
    assert report.status is OptimizationStatus.CONVERGED
    assert np.allclose(report.history, [1.0, 0.25, 0.0, 0.25, 1.0, 1.0, 1.0])
    assert np.allclose(X, 0.0)


def test_line_search_returns_last_accepted_point() -> None:
    def quadratic(X: np.ndarray):
        return float(X[0] ** 2), 2.0 * X

    X, report = minimize_gauge(
        quadratic,
        _walk,
        np.array([1.0]),
        max_iterations=50,
        convergence_tolerance=1e-14,
        gradient_tolerance=1e-8,
        step_size=1.0,
    )
    assert report.status is OptimizationStatus.CONVERGED
    assert np.isclose(quadratic(X)[0], report.final_value)
    assert abs(X[0]) < 1e-6


def test_terminal_states() -> None:
    terminal = {s for s in OptimizationStatus if s.is_terminal}
    assert terminal == {
        OptimizationStatus.CONVERGED,
        OptimizationStatus.MAX_ITER_EXCEEDED,
        OptimizationStatus.DIVERGED,
    }
    assert not ConvergenceReport().status.is_terminal


def test_report_text_without_gradient() -> None:
    report = ConvergenceReport(status=OptimizationStatus.CONVERGED, iterations=4, history=[2.0, 1.5])
    text = str(report)
    assert "converged after 4 iteration(s)" in text
    assert "nan" not in text and "|grad|" not in text

    report.grad_norm = 1e-3
    assert "|grad| 1.000e-03" in str(report)
