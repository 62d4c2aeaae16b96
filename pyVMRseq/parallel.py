from functools import partial
import ray

def parallel_map(func,units,ncpu: int=1,executor=None,shared=()):
    """
    Apply func to every unit of work, sequentially, through a user supplied executor, or in parallel with Ray.

    Parameters:
        func (function): Called as func(unit, *shared) for each unit. Must be a module level function when ncpu > 1.
        units (iterable): Units of work (e.g. candidate regions or chromosomes).
        ncpu (integer, default: 1): Number of cpus to use. If > 1 and no executor is given, will use a parallel backend with Ray.
        executor (optional: object with an order preserving map() method, e.g. concurrent.futures.ThreadPoolExecutor):
            If given, units are dispatched through executor.map and ncpu is ignored.
        shared (tuple, default: ()): Read-only objects passed to every call. With Ray these are placed in the
            object store once with ray.put().

    Returns:
        list: Results in the same order as units, regardless of the order in which units finish.
    """
    assert isinstance(ncpu,int), "ncpu must be positive integer"
    assert ncpu>0, "ncpu must be positive integer"

    units = list(units)
    if executor is not None:
        return list(executor.map(partial(_call_unit,func,tuple(shared)), units))

    if ncpu > 1: #Use ray for parallel processing
        ray_initialized = ray.is_initialized()
        if not ray_initialized:
            ray.init(num_cpus=ncpu)
        try:
            shared_ids = [ray.put(obj) for obj in shared]
            remote_func = ray.remote(func)
            result = ray.get([remote_func.remote(unit,*shared_ids) for unit in units])
        finally:
            # Clean up Ray if we initialized it
            if not ray_initialized:
                ray.shutdown()
        return result

    return [func(unit,*shared) for unit in units]

def _call_unit(func,shared,unit):
    return func(unit,*shared)

def backend_name(ncpu: int=1,executor=None) -> str:
    """Describe the backend parallel_map will use, for progress messages."""
    if executor is not None:
        return f"executor:{type(executor).__name__}"
    if ncpu > 1:
        return "ray"
    return "sequential"
