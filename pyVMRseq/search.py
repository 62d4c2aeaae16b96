from dataclasses import dataclass
import numpy as np
import pandas as pd
from pyVMRseq.FitVMR import FitVMR,optim_control
from pyVMRseq.parallel import parallel_map
from pyVMRseq.regions import IndexRange,check_disjoint,check_nested
from pyVMRseq.transition import TP0
from pyVMRseq.type_annotations import CRFitDiagnostic

@dataclass(frozen=True)
class VariablyMethylatedRegion(IndexRange):
    """
    Index range of a variably methylated region, with its fitted prevalence pi and the log-likelihood of the
    two-grouping model minus that of the one-grouping model (loglik_diff).
    """
    pi: float = np.nan
    loglik_diff: float = np.nan
    converged: bool = True

def search_vmr(sites: pd.DataFrame,crs,bb_params,tp=None,control=None,min_num_vmr: int=5,gradient: bool=True,
               ncpu: int=1,executor=None):
    """
    Detect variably methylated regions within candidate regions by fitting a two-grouping HMM to each.

    Parameters:
        sites (pandas dataframe): Site table with columns 'pos', 'meth' and 'total'.
        crs (list): IndexRange of each candidate region (see call_candidate_regions).
        bb_params (PriorParams): Beta prior parameters used in the emission probabilities.
        tp (optional: TransitionModel): Transition model, defaults to the built-in model TP0.
        control (optional: OptimControl): Optimizer settings, defaults to optim_control().
        min_num_vmr (integer, default: 5): Minimum number of sites in a VMR.
        gradient (boolean, default: True): Whether to optimize prevalence by exponentiated gradient descent. If False
            the first initial value in control is used for every region.
        ncpu (integer, default: 1): Number of cpus to use. If > 1 candidate regions are fitted in parallel with Ray.
        executor (optional): Executor with an order preserving map() method, used instead of Ray if given.

    Returns:
        list, pandas dataframe: Sorted VariablyMethylatedRegion objects (indices refer to rows of sites), and one row of
        fit diagnostics per candidate region (cr_index, pi, loglik, n_iter, converged, n_vmr, message).

    Notes:
        A failed fit of one region (e.g. a non-finite likelihood) is reported in its diagnostics row and yields no VMR;
        other regions are unaffected. Regions whose optimizer reached max_iter are still reported with converged False.
    """
    assert isinstance(min_num_vmr,(int,np.integer)), "min_num_vmr must be positive integer"
    assert min_num_vmr>0, "min_num_vmr must be positive integer"
    if tp is None:
        tp = TP0
    if control is None:
        control = optim_control()

    meth = sites['meth'].to_numpy()
    total = sites['total'].to_numpy()
    pos = sites['pos'].to_numpy()
    units = [(cr_index, cr, meth[cr.start_ind:cr.end_ind+1], total[cr.start_ind:cr.end_ind+1], pos[cr.start_ind:cr.end_ind+1])
             for cr_index, cr in enumerate(crs)]

    results = parallel_map(search_vmr_region, units, ncpu=ncpu, executor=executor,
                           shared=(bb_params, tp, control, min_num_vmr, gradient))

    vmrs = [vmr for region_vmrs, _ in results for vmr in region_vmrs]
    check_disjoint(vmrs)
    check_nested(vmrs, crs)
    cr_fits = pd.DataFrame([diagnostic for _, diagnostic in results],
                           columns=['cr_index','pi','loglik','n_iter','converged','n_vmr','message'])
    return vmrs, cr_fits

def search_vmr_region(unit,bb_params,tp,control,min_num_vmr=5,gradient=True):
    """
    Fit the HMM to one candidate region and extract its VMRs.

    Parameters:
        unit (tuple): (cr_index, cr, meth, total, pos) for one candidate region.
        bb_params (PriorParams): Beta prior parameters.
        tp (TransitionModel): Transition model.
        control (OptimControl): Optimizer settings.
        min_num_vmr (integer, default: 5): Minimum number of sites in a VMR.
        gradient (boolean, default: True): Whether to optimize prevalence.

    Returns:
        list, dict: VariablyMethylatedRegion objects of this region, and its CRFitDiagnostic.
    """
    cr_index, cr, meth, total, pos = unit
    diagnostic = CRFitDiagnostic(cr_index=cr_index, pi=np.nan, loglik=np.nan, n_iter=0, converged=False, n_vmr=0, message="")

    if cr.num_cpg < min_num_vmr:
        diagnostic['message'] = "Region shorter than min_num_vmr."
        return [], diagnostic

    try:
        model = FitVMR(meth, total, pos, bb_params, tp, control)
        fit = model.fit(gradient=gradient)
        if not np.isfinite(fit['loglik']):
            raise FloatingPointError("Non-finite log-likelihood.")

        vmrs = []
        for start, end in model.vmr_candidates(min_num_vmr):
            sub = model.subset(start, end)
            if gradient:
                sub_fit = sub.fit(gradient=True, inits=[fit['pi']])
            else:
                sub_fit = fit
            vmrs.append(VariablyMethylatedRegion(
                start_ind=cr.start_ind + start,
                end_ind=cr.start_ind + end,
                pi=sub_fit['pi'],
                loglik_diff=sub.loglik(sub_fit['pi']) - sub.loglik_one(),
                converged=bool(fit['converged'] and sub_fit['converged'])
            ))
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        diagnostic['message'] = f"Fit failed: {e}"
        return [], diagnostic

    diagnostic.update(pi=fit['pi'], loglik=fit['loglik'], n_iter=fit['n_iter'], converged=fit['converged'], n_vmr=len(vmrs))
    if not fit['converged']:
        diagnostic['message'] = "Optimizer reached max_iter."
    return vmrs, diagnostic
