"""
stages.py
---------
Description: The analysis stages of the processing pipeline, and the dependencies between them.
"""

import enum
from typing import List, Tuple, Union

from gaittoolbox.exceptions import ConfigurationError


class Stage(enum.Enum):
    IK = 'kinematics-fit'
    ADJUSTMENT = 'model-adjustment'
    RRA = 'residual-reduction'
    ID = 'inverse-dynamics'
    BK = 'body-kinematics'
    CMC = 'muscle-driven-simulation'

    @property
    def label(self) -> str:
        return self.value

    @staticmethod
    def parse(value: Union[str, 'Stage']) -> 'Stage':
        """
        Accepts a Stage, a short name ('IK', 'RRA', ...) or a long name ('inverse-dynamics', ...).
        """
        if isinstance(value, Stage):
            return value
        key = str(value).strip()
        if key.upper() in Stage.__members__:
            return Stage[key.upper()]
        for stage in Stage:
            if stage.value == key.lower():
                return stage
        raise ConfigurationError(f'Unrecognised stage name "{value}". Expected one of: '
                                 f'{", ".join(s.name for s in Stage)}.')


# Every stage in this table must be complete before the keyed stage can run.
REQUIRES_ALL = {
    Stage.IK: (),
    Stage.ADJUSTMENT: (Stage.IK,),
    Stage.RRA: (Stage.IK, Stage.ADJUSTMENT),
    Stage.ID: (Stage.RRA,),
    Stage.BK: (),
    Stage.CMC: (Stage.RRA,),
}

# At least one stage in this table must be complete before the keyed stage can run. Earlier entries are preferred.
REQUIRES_ANY = {
    Stage.BK: (Stage.RRA, Stage.IK),
}

# Prerequisites satisfied by the dataset-wide adjustment flag rather than by the unit's own outputs.
DATASET_WIDE = {Stage.ADJUSTMENT}


def prerequisites(stage: Stage) -> Tuple[Tuple[Stage, ...], Tuple[Stage, ...]]:
    return REQUIRES_ALL[stage], REQUIRES_ANY.get(stage, ())


def parse_stage_list(stages) -> List[Stage]:
    if isinstance(stages, (str, Stage)):
        stages = [stages]
    parsed = [Stage.parse(stage) for stage in stages]
    if len(parsed) == 0:
        raise ConfigurationError('At least one stage must be requested.')
    if len(set(parsed)) != len(parsed):
        raise ConfigurationError('Each stage may only be requested once per run: ' +
                                 ', '.join(stage.name for stage in parsed))
    return parsed
