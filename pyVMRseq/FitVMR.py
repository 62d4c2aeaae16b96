import copy
import numpy as np
from numba import njit
from scipy.stats import betabinom,binom
from scipy.special import logsumexp,logit,expit
from pyVMRseq.regions import label_runs
from pyVMRseq.transition import TP0
from pyVMRseq.type_annotations import OptimControl,PrevalenceFit

# Hidden states of the two-grouping model, indexed by the number of methylated groupings
U, H, M = 0, 1, 2

def optim_control(inits=(0.2,0.5,0.8),eta: float=0.5,epsilon: float=1e-3,max_iter: int=50,max_backtrack: int=20,
                  pi_bounds=(0.05,0.95)) -> OptimControl:
    """
    Settings controlling optimization of the prevalence parameter of the two-grouping HMM.

    Parameters:
        inits (tuple of floats, default: (0.2,0.5,0.8)): Initial values of prevalence. The optimizer is run from each and the
            best fit is kept. Without gradient descent the first value is used as the prevalence of every region.
        eta (float, default: 0.5): Learning rate of exponentiated gradient descent, scaled per iteration by the expected number
            of cells in the variable state.
        epsilon (float, default: 1e-3): Optimization stops once prevalence changes by less than epsilon.
        max_iter (integer, default: 50): Maximum number of iterations from each initial value.
        max_backtrack (integer, default: 20): Maximum number of times the step is halved when it would lower the likelihood.
        pi_bounds (tuple of floats, default: (0.05,0.95)): Prevalence is kept within these bounds.

    Returns:
        OptimControl: Named tuple of the settings.
    """
    inits = tuple(float(init) for init in np.atleast_1d(inits))
    assert len(inits)>0, "inits must contain at least one value"
    assert len(pi_bounds)==2 and 0 < pi_bounds[0] < pi_bounds[1] < 1, "pi_bounds must be (lower, upper) within (0, 1)"
    assert all([pi_bounds[0] <= init <= pi_bounds[1] for init in inits]), "inits must lie within pi_bounds"
    assert eta>0, "eta must be positive"
    assert epsilon>0, "epsilon must be positive"
    assert isinstance(max_iter,int), "max_iter must be positive integer"
    assert max_iter>0, "max_iter must be positive integer"
    assert isinstance(max_backtrack,int), "max_backtrack must be non-negative integer"
    assert max_backtrack>=0, "max_backtrack must be non-negative integer"
    return OptimControl(inits=inits, eta=float(eta), epsilon=float(epsilon), max_iter=max_iter,
                        max_backtrack=max_backtrack, pi_bounds=(float(pi_bounds[0]), float(pi_bounds[1])))

class FitVMR:
    """
    Hidden Markov models of the sites of one candidate region.

    The one-grouping model assumes all cells share the methylation state of each site (states U, M). The two-grouping
    model splits cells into a methylated grouping of prevalence pi and the rest (states U, H, M), where H means only the
    prevalence-pi grouping is methylated. Emissions are beta-binomial:
        U: BB(m; n, pars_u)    M: BB(m; n, pars_m)
        H: sum_k Binom(k; n, pi) * sum_j BB(j; k, pars_m) * BB(m - j; n - k, pars_u)
    where k is the number of the n cells in the methylated grouping. All probabilities are kept in log space.

    A single pi is fitted per region. If a region holds adjacent variable blocks of very different prevalence (e.g. 0.1
    next to 0.9), pi settles near the block that fits best and the other block is typically decoded as U or M, so it is
    not called unless it forms a candidate region of its own.
    """

    def __init__(self,meth,total,pos,bb_params,tp=None,control=None):
        """
        Parameters:
            meth (1D numpy array): Number of methylated cells at each site of the region.
            total (1D numpy array): Number of cells covering each site of the region.
            pos (1D numpy array): Sorted genomic positions of the sites.
            bb_params (PriorParams): Beta prior parameters (pars_u, pars_m).
            tp (optional: TransitionModel): Transition model. Defaults to the built-in model TP0.
            control (optional: OptimControl): Optimizer settings. Defaults to optim_control().
        """
        self.meth = np.asarray(meth).astype(np.int64)
        self.total = np.asarray(total).astype(np.int64)
        self.pos = np.asarray(pos).astype(np.int64)
        assert self.meth.shape == self.total.shape == self.pos.shape, "meth, total and pos must have the same length"
        assert self.meth.size > 0, "A region must contain at least one site"
        if np.any(self.meth < 0) or np.any(self.meth > self.total):
            raise ValueError("Methylated counts must be between 0 and total at every site.")

        self.n_sites = self.meth.size
        self.tp = tp if tp is not None else TP0
        self.control = control if control is not None else optim_control()
        (a_u, b_u), (a_m, b_m) = bb_params
        self.pars_u = (a_u, b_u)
        self.pars_m = (a_m, b_m)

        self.log_emis_u = betabinom.logpmf(self.meth, self.total, a_u, b_u)
        self.log_emis_m = betabinom.logpmf(self.meth, self.total, a_m, b_m)
        self._k = np.arange(self.total.max() + 1)
        self._log_conv = self._group_convolution()

        self._log_trans_one = self.tp.log_transitions(self.pos, n_groups=1)
        self._log_trans_two = self.tp.log_transitions(self.pos, n_groups=2)
        self._log_init_one = self.tp.log_initial(n_groups=1)
        self._log_init_two = self.tp.log_initial(n_groups=2)

        # Final params set to none until fit
        self.pi = None
        self.LogLike = None
        self.converged = None
        self.n_iter = None
        self.path = None

    def _group_convolution(self) -> np.ndarray:
        """
        Log probability of each site's methylated count, given k cells in the methylated grouping, for k = 0..max(total).
        Does not depend on pi, so computed once. Entries with k > total are -inf.
        """
        log_conv = np.full((self.n_sites, self._k.size), -np.inf)
        for site, (m, n) in enumerate(zip(self.meth, self.total)):
            k = np.arange(n + 1)[:, np.newaxis]
            j = np.arange(m + 1)[np.newaxis, :]
            terms = betabinom.logpmf(j, k, *self.pars_m) + betabinom.logpmf(m - j, n - k, *self.pars_u)
            log_conv[site, :n + 1] = logsumexp(terms, axis=1)
        return log_conv

    def _mixture(self,pi):
        """Log emission of the variable state at each site, and the per-k terms summed to get it."""
        terms = binom.logpmf(self._k[np.newaxis, :], self.total[:, np.newaxis], pi) + self._log_conv
        return logsumexp(terms, axis=1), terms

    def log_emissions(self,pi,n_groups: int=2) -> np.ndarray:
        """
        Log emission probabilities of every site.

        Returns:
            2D numpy array: Shape (n_sites, 3) with columns U, H, M for two groupings, or (n_sites, 2) with columns U, M for one.
        """
        if n_groups == 1:
            return np.column_stack([self.log_emis_u, self.log_emis_m])
        log_emis_h, _ = self._mixture(pi)
        return np.column_stack([self.log_emis_u, log_emis_h, self.log_emis_m])

    def loglik(self,pi) -> float:
        """Log-likelihood of the two-grouping model with prevalence pi."""
        log_alpha = forward(self._log_init_two, self._log_trans_two, self.log_emissions(pi))
        return float(logsumexp(log_alpha[-1]))

    def loglik_one(self) -> float:
        """Log-likelihood of the one-grouping model."""
        log_alpha = forward(self._log_init_one, self._log_trans_one, self.log_emissions(None, n_groups=1))
        return float(logsumexp(log_alpha[-1]))

    def loglik_diff(self,pi) -> float:
        """Log-likelihood of the two-grouping model minus that of the one-grouping model."""
        return self.loglik(pi) - self.loglik_one()

    def gradient(self,pi):
        """
        Log-likelihood of the two-grouping model and its derivative with respect to pi.

        Returns:
            tuple: (log-likelihood, derivative, expected number of cells at sites in the variable state).

        Notes:
            The derivative is sum_t P(state_t = H | data) * d log e_H(t) / d pi, with posteriors from forward-backward and
            d log e_H / d pi the posterior mean over k of k / pi - (n - k) / (1 - pi).
        """
        log_emis_h, terms = self._mixture(pi)
        log_emis = np.column_stack([self.log_emis_u, log_emis_h, self.log_emis_m])
        log_alpha = forward(self._log_init_two, self._log_trans_two, log_emis)
        log_beta = backward(self._log_trans_two, log_emis)
        ll = logsumexp(log_alpha[-1])
        post_h = np.exp(log_alpha[:, H] + log_beta[:, H] - ll)

        weights = np.exp(terms - log_emis_h[:, np.newaxis])
        k = self._k[np.newaxis, :]
        score = (weights * (k / pi - (self.total[:, np.newaxis] - k) / (1 - pi))).sum(axis=1)
        return float(ll), float(np.sum(post_h * score)), float(np.sum(post_h * self.total))

    def ascend(self,pi) -> PrevalenceFit:
        """
        Exponentiated gradient ascent of the two-grouping log-likelihood in pi, starting from pi.

        Each step multiplies the weights (pi, 1 - pi) by exp(eta_t * g) and exp(-eta_t * g), g the derivative, and
        renormalizes, with eta_t = eta / (2 * expected cells in the variable state). A step that would lower the
        likelihood is halved, up to max_backtrack times; if none helps the current pi is a stationary point.
        """
        lower, upper = self.control.pi_bounds
        pi = float(np.clip(pi, lower, upper))
        ll, grad, n_eff = self.gradient(pi)
        converged = False
        n_iter = 0
        for n_iter in range(1, self.control.max_iter + 1):
            step = self.control.eta / (2 * max(n_eff, 1.0))
            for _ in range(self.control.max_backtrack + 1):
                new_pi = float(np.clip(expit(logit(pi) + 2 * step * grad), lower, upper))
                new_ll, new_grad, new_n_eff = self.gradient(new_pi)
                if new_ll >= ll:
                    break
                step /= 2
            else:
                converged = True
                break
            delta = abs(new_pi - pi)
            pi, ll, grad, n_eff = new_pi, new_ll, new_grad, new_n_eff
            if delta < self.control.epsilon:
                converged = True
                break
        return PrevalenceFit(pi=pi, loglik=ll, n_iter=n_iter, converged=converged)

    def fit(self,gradient: bool=True,inits=None) -> PrevalenceFit:
        """
        Estimate prevalence and decode the most likely hidden states.

        Parameters:
            gradient (boolean, default: True): Whether to optimize pi. If False pi is fixed at the first initial value.
            inits (optional: list of floats): Initial values, overriding those of the control settings.

        Returns:
            PrevalenceFit: The selected fit (pi, loglik, n_iter, converged). Also stored on the object with the decoded path.
        """
        if inits is None:
            inits = self.control.inits
        if gradient:
            best = None
            for init in inits:
                res = self.ascend(init)
                if best is None or res['loglik'] > best['loglik']:
                    best = res
        else:
            pi = float(inits[0])
            best = PrevalenceFit(pi=pi, loglik=self.loglik(pi), n_iter=0, converged=True)

        self.pi = best['pi']
        self.LogLike = best['loglik']
        self.converged = best['converged']
        self.n_iter = best['n_iter']
        self.path = self.decode(self.pi)
        return best

    def decode(self,pi) -> np.ndarray:
        """Most likely sequence of two-grouping states (0: U, 1: H, 2: M) given prevalence pi."""
        return viterbi(self._log_init_two, np.ascontiguousarray(self._log_trans_two),
                       np.ascontiguousarray(self.log_emissions(pi)))

    def vmr_candidates(self,min_num_vmr: int=5) -> list:
        """
        Maximal runs of the decoded path in the variable state, with at least min_num_vmr sites.

        Returns:
            list: (start, end) tuple of inclusive indices relative to the region.
        """
        assert self.path is not None, "Run fit() before calling vmr_candidates()"
        runs = label_runs(np.where(self.path == H, 0, -1))
        return [(start, end) for start, end in runs if end - start + 1 >= min_num_vmr]

    def subset(self,start: int,end: int):
        """
        Models restricted to sites start..end (inclusive, relative to the region), reusing precomputed emissions.
        """
        sub = copy.copy(self)
        sites = slice(start, end + 1)
        sub.meth = self.meth[sites]
        sub.total = self.total[sites]
        sub.pos = self.pos[sites]
        sub.n_sites = sub.meth.size
        sub.log_emis_u = self.log_emis_u[sites]
        sub.log_emis_m = self.log_emis_m[sites]
        sub._log_conv = self._log_conv[sites]
        sub._log_trans_one = self._log_trans_one[start:end]
        sub._log_trans_two = self._log_trans_two[start:end]
        sub.pi = None
        sub.LogLike = None
        sub.converged = None
        sub.n_iter = None
        sub.path = None
        return sub

def forward(log_init,log_trans,log_emis) -> np.ndarray:
    """Log forward variables, shape (n_sites, n_states)."""
    n_sites, n_states = log_emis.shape
    log_alpha = np.empty((n_sites, n_states))
    log_alpha[0] = log_init + log_emis[0]
    for t in range(1, n_sites):
        log_alpha[t] = logsumexp(log_alpha[t-1][:, np.newaxis] + log_trans[t-1], axis=0) + log_emis[t]
    return log_alpha

def backward(log_trans,log_emis) -> np.ndarray:
    """Log backward variables, shape (n_sites, n_states)."""
    n_sites, n_states = log_emis.shape
    log_beta = np.zeros((n_sites, n_states))
    for t in range(n_sites - 2, -1, -1):
        log_beta[t] = logsumexp(log_trans[t] + (log_emis[t+1] + log_beta[t+1])[np.newaxis, :], axis=1)
    return log_beta

@njit
def viterbi(log_init,log_trans,log_emis):
    """
    Most likely hidden state path. Ties go to the lower state index.

    Parameters:
        log_init (1D numpy array): Log initial probabilities, shape (n_states,).
        log_trans (3D numpy array): Log transition matrices between consecutive sites, shape (n_sites - 1, n_states, n_states).
        log_emis (2D numpy array): Log emission probabilities, shape (n_sites, n_states).

    Returns:
        1D numpy array: State index of each site.
    """
    n_sites, n_states = log_emis.shape
    delta = np.empty((n_sites, n_states))
    psi = np.zeros((n_sites, n_states), dtype=np.int64)
    for s in range(n_states):
        delta[0, s] = log_init[s] + log_emis[0, s]
    for t in range(1, n_sites):
        for s in range(n_states):
            best = -np.inf
            arg = 0
            for r in range(n_states):
                v = delta[t-1, r] + log_trans[t-1, r, s]
                if v > best:
                    best = v
                    arg = r
            delta[t, s] = best + log_emis[t, s]
            psi[t, s] = arg

    path = np.zeros(n_sites, dtype=np.int64)
    best = -np.inf
    for s in range(n_states):
        if delta[n_sites-1, s] > best:
            best = delta[n_sites-1, s]
            path[n_sites-1] = s
    for t in range(n_sites - 2, -1, -1):
        path[t] = psi[t+1, path[t+1]]
    return path
