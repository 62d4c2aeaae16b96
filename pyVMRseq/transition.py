import numpy as np

class TransitionModel():
    """
    Distance dependent transition probabilities between methylation states of neighbouring sites.

    A single grouping of cells follows a two state chain over unmethylated (U) and methylated (M), with one
    transition matrix per bin of inter-site distance. The one-grouping HMM uses this chain directly. The two-grouping
    HMM runs two independent copies and tracks the number of methylated groupings: U (0, none), H (1, only the
    grouping with prevalence pi) and M (2, both). Lumping the two mixed product states is exact, as they have
    identical outgoing transitions.

    Instances are read-only and may be shared between regions and workers.
    """

    def __init__(self,transit_probs: np.ndarray,max_dist_bp: int=2000,buffer_bp: int=50,init_meth: float=0.5):
        """
        Parameters:
            transit_probs (3D numpy array): Shape (n_bins, 2, 2), row-stochastic transition matrix of one grouping for each distance bin.
            max_dist_bp (integer, default: 2000): Distances above this are treated as max_dist_bp.
            buffer_bp (integer, default: 50): Width in base pairs of each distance bin.
            init_meth (float, default: 0.5): Probability that the first site of a region is methylated in a grouping.
        """
        transit_probs = np.array(transit_probs, dtype='float64')
        assert transit_probs.ndim == 3 and transit_probs.shape[1:] == (2, 2), "transit_probs must have shape (n_bins, 2, 2)"
        assert isinstance(max_dist_bp,(int,np.integer)) and max_dist_bp>0, "max_dist_bp must be positive integer"
        assert isinstance(buffer_bp,(int,np.integer)) and buffer_bp>0, "buffer_bp must be positive integer"
        assert 0 < init_meth < 1, "init_meth must be between 0 and 1"
        if transit_probs.shape[0] != max_dist_bp // buffer_bp + 1:
            raise ValueError(f"Expected {max_dist_bp // buffer_bp + 1} distance bins for max_dist_bp={max_dist_bp} and buffer_bp={buffer_bp}, got {transit_probs.shape[0]}.")
        if np.any(transit_probs < 0) or not np.allclose(transit_probs.sum(axis=2), 1):
            raise ValueError("Each transition matrix must have non-negative rows summing to 1.")

        transit_probs.setflags(write=False)
        self.transit_probs = transit_probs
        self.max_dist_bp = int(max_dist_bp)
        self.buffer_bp = int(buffer_bp)
        self.init_meth = float(init_meth)

        p00 = transit_probs[:,0,0]; p01 = transit_probs[:,0,1]
        p10 = transit_probs[:,1,0]; p11 = transit_probs[:,1,1]
        two_group = np.stack([
            np.stack([p00**2, 2*p00*p01, p01**2], axis=1),
            np.stack([p00*p10, p00*p11 + p01*p10, p01*p11], axis=1),
            np.stack([p10**2, 2*p10*p11, p11**2], axis=1)
        ], axis=1)
        with np.errstate(divide='ignore'):
            self._log_one = np.log(transit_probs)
            self._log_two = np.log(two_group)
        self._log_one.setflags(write=False)
        self._log_two.setflags(write=False)

    @classmethod
    def from_decay(cls,max_dist_bp: int=2000,buffer_bp: int=50,persistence: float=0.99,decay_bp: float=1000,init_meth: float=0.5):
        """
        Build a symmetric model whose probability of keeping the methylation state decays with distance,
        0.5 + (persistence - 0.5) * exp(-d / decay_bp), evaluated at the midpoint d of each distance bin.
        """
        assert 0.5 <= persistence < 1, "persistence must be in [0.5, 1)"
        assert decay_bp > 0, "decay_bp must be positive"
        n_bins = max_dist_bp // buffer_bp + 1
        mid = (np.arange(n_bins) + 0.5) * buffer_bp
        stay = 0.5 + (persistence - 0.5) * np.exp(-mid / decay_bp)
        transit_probs = np.empty((n_bins, 2, 2))
        transit_probs[:,0,0] = transit_probs[:,1,1] = stay
        transit_probs[:,0,1] = transit_probs[:,1,0] = 1 - stay
        return cls(transit_probs, max_dist_bp=max_dist_bp, buffer_bp=buffer_bp, init_meth=init_meth)

    @classmethod
    def load(cls,path):
        """Load a model written by save()."""
        with np.load(path) as data:
            return cls(data['transit_probs'], max_dist_bp=int(data['max_dist_bp']),
                       buffer_bp=int(data['buffer_bp']), init_meth=float(data['init_meth']))

    def save(self,path):
        np.savez(path, transit_probs=self.transit_probs, max_dist_bp=self.max_dist_bp,
                 buffer_bp=self.buffer_bp, init_meth=self.init_meth)

    def distance_bins(self,pos) -> np.ndarray:
        dist = np.diff(np.asarray(pos, dtype=np.int64))
        return np.minimum(dist, self.max_dist_bp) // self.buffer_bp

    def log_transitions(self,pos,n_groups: int=2) -> np.ndarray:
        """
        Log transition matrices between consecutive sites.

        Parameters:
            pos (1D numpy array): Sorted genomic positions of the sites of a region.
            n_groups (integer, default: 2): 1 for the one-grouping chain (states U, M), 2 for the two-grouping chain (states U, H, M).

        Returns:
            3D numpy array: Shape (len(pos) - 1, n_states, n_states).
        """
        bins = self.distance_bins(pos)
        if n_groups == 1:
            return self._log_one[bins]
        if n_groups == 2:
            return self._log_two[bins]
        raise ValueError(f"n_groups must be 1 or 2, got {n_groups}.")

    def log_initial(self,n_groups: int=2) -> np.ndarray:
        q = self.init_meth
        if n_groups == 1:
            return np.log([1 - q, q])
        if n_groups == 2:
            return np.log([(1 - q)**2, 2*q*(1 - q), q**2])
        raise ValueError(f"n_groups must be 1 or 2, got {n_groups}.")

# Built-in default model
TP0 = TransitionModel.from_decay()
