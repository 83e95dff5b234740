import typing as t

import torch

from fitkit.const import backend_name, float_format

_dtype_names = {
    torch.float32: "f32",
    torch.float64: "f64",
    torch.float16: "f16",
    torch.bfloat16: "bf16",
    torch.int64: "i64",
    torch.int32: "i32",
    torch.int16: "i16",
    torch.int8: "i8",
    torch.uint8: "u8",
    torch.bool: "bool",
}


def pp(x: t.Any) -> str:
    if isinstance(x, torch.Tensor):
        return ppt(x)
    if isinstance(x, float):
        return ppf(x)
    if isinstance(x, dict):
        return ppd(x)
    return str(x)


def ppd(d: t.Dict[str, t.Any]) -> str:
    return ", ".join([f"{k}: {pp(v)}" for k, v in d.items()])


def ppf(x: float) -> str:
    return f"{x:{float_format}}"


def ppt(x: torch.Tensor) -> str:
    if x.dim() == 0:
        return pp(x.item())
    return str(x.tolist())


def get_kind(dtype: torch.dtype) -> str:
    if dtype == torch.bool:
        return "Bool"
    if dtype.is_floating_point:
        return "Float"
    return "Int"


def get_dtype_name(dtype: torch.dtype) -> str:
    return _dtype_names.get(dtype, str(dtype).replace("torch.", ""))


def pp_tensor(x: torch.Tensor) -> str:
    """
    Return a multi-line description of `x` with its data, shape, device, backend, kind and dtype.
    """
    fields = [
        ("data", f" {ppt(x.detach().cpu())}"),
        ("shape", f"  {list(x.size())}"),
        ("device", f"  {x.device}"),
        ("backend", f'  "{backend_name}"'),
        ("kind", f'  "{get_kind(x.dtype)}"'),
        ("dtype", f'  "{get_dtype_name(x.dtype)}"'),
    ]

    body = "\n".join([f"  {name}:{value}," for name, value in fields])

    return f"Tensor {{\n{body}\n}}"
