from dataclasses import dataclass


@dataclass
class LoweringConfig:
    def __init__(
        self,
        check_dcp: bool = True,
        reject_nonfinite: bool = False,
        printing: bool = False,
    ):
        """
        Configuration class for a lowering (compile) pass.

        One config object is attached to each UniqueConicForms cache and governs every
        expression lowered through it.

        Main arguments:
        These are the arguments most commonly used day-to-day.

        Args:
            check_dcp (bool): Check the composed curvature of each top-level expression before
                lowering it and raise DcpError if it is NOT_DCP. When disabled, non-compliant
                products are still rejected when the offending atom is reached. Defaults to True.
            printing (bool): Print a summary table after lower_expressions finishes. Defaults to False.

        Other arguments:
        These arguments are less frequently used, and for most purposes you shouldn't need to understand these.

        Args:
            reject_nonfinite (bool): Raise ValueError as soon as a lowered operator contains inf or
                NaN, e.g. after dividing by a constant with zero entries. By default such values
                propagate to the caller. Defaults to False.
        """
        self.check_dcp = check_dcp
        self.reject_nonfinite = reject_nonfinite
        self.printing = printing
