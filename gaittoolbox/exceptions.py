"""
exceptions.py
-------------
Description: Custom exception classes used by the Gait Analysis Toolbox batch engine.
"""

import textwrap


class Error(Exception):
    """Base class for exceptions used by the batch engine."""
    def __init__(self, original_message: str = ''):
        self.message = f'{self.get_message()} Below is the original error message, which may contain useful ' \
                       f'information about the issue.'
        self.original_message = f'\n\n{textwrap.indent(original_message, " " * 4)}\n\n'
        self.type = self.get_type()

        super().__init__(self.message + self.original_message)

    def get_message(self):
        raise NotImplementedError("Subclasses must implement the 'get_message' method.")

    def get_type(self):
        return self.__class__.__name__

    def get_error_dict(self):
        return {
            "type": self.type,
            "message": self.message,
            "original_message": self.original_message
        }


class ConfigurationError(Error):
    """Raised when the dataset descriptor, a parameter name/value, or a subject is invalid."""
    def get_message(self):
        return "ConfigurationError: The dataset configuration is invalid. Please check that the DatasetDescriptor " \
               "is well formed, and that every subject, context parameter name and parameter value you requested " \
               "is declared in it."


class PrerequisiteNotMet(Error):
    """Raised when a stage is requested before one of the stages it depends on has completed."""
    def __init__(self, stage, missing, original_message: str = ''):
        self.stage = stage
        self.missing = missing
        super().__init__(original_message or f'{stage.label} requires {missing.label}.')

    def get_message(self):
        return f"PrerequisiteNotMet: Cannot run {self.stage.label} because {self.missing.label} has not been " \
               f"completed. Run {self.missing.label} first."


class AlreadyAdjusted(Error):
    """Raised when the one-time model adjustment pass is requested a second time."""
    def get_message(self):
        return "AlreadyAdjusted: Model adjustment has already been completed for this dataset. Adjusted models " \
               "are never regenerated in place; remove the adjustment flag file and the adjusted models by hand if " \
               "you really want to redo this step."


class MalformedResultLayout(Error):
    """Raised when a result folder does not have the layout the loader expects."""
    def __init__(self, unit=None, original_message: str = ''):
        self.unit = unit
        super().__init__(original_message)

    def get_message(self):
        return "MalformedResultLayout: Error encountered when loading results. The result files for this element " \
               "are missing or could not be read. The message below names the file or folder at fault."


class ResourceExhausted(Error):
    """Raised when available system memory falls below the configured threshold."""
    def get_message(self):
        return "ResourceExhausted: Available system memory dropped below the configured threshold, so batch " \
               "processing was stopped before the operating system could kill the process. Resume from the " \
               "checkpoint once memory has been freed."


class StageFailure(Error):
    """Raised when the simulation engine fails while running a stage."""
    def __init__(self, stage=None, unit=None, original_message: str = ''):
        self.stage = stage
        self.unit = unit
        super().__init__(original_message)

    def get_message(self):
        where = ''
        if self.stage is not None:
            where += f' while running {self.stage.label}'
        if self.unit is not None:
            where += f' on {self.unit}'
        return f"StageFailure: The simulation engine failed{where}. Check the input motion and force files for " \
               f"this element, and the engine output above."
