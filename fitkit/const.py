float_format = ".6f"
metric_format = ".3f"

backend_name = "torch"
