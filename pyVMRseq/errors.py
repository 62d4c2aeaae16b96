class DataInsufficient(ValueError):
    """
    Raised when the coverage of the input sites is too degenerate to estimate beta priors or a variance cutoff.
    The whole run depends on these global estimates, so this always stops the run.
    """


class OptimizerNonConvergence(RuntimeWarning):
    """
    Warning issued when the prevalence optimizer of one or more candidate regions stopped at the iteration limit.
    Affected regions are still reported, using the best prevalence found.
    """
