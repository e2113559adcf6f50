from __future__ import annotations

from typing import Callable, Iterable, List, Optional

from petsos.models import Advisory, DistressCase

Scorer = Callable[[DistressCase], Optional[Advisory]]

SEVERITY_SIGNALS = {
    "critical": {"not breathing", "unconscious", "seizure", "hit by car", "poisoned", "choking", "collapsed"},
    "high": {"bleeding", "broken", "bloated", "burned", "snake", "trapped", "heatstroke"},
    "moderate": {"limping", "vomiting", "diarrhea", "wound", "injury", "swollen", "bite"},
}

GUIDANCE = {
    "bleeding": "Apply firm pressure to the wound with a clean cloth.",
    "not breathing": "Check the airway and keep the animal's neck extended.",
    "choking": "Open the mouth carefully and look for visible obstructions.",
    "seizure": "Clear the area around the animal and do not restrain it.",
    "poisoned": "Keep the packaging of the suspected poison for the vet.",
    "hit by car": "Move the animal on a flat board or blanket, keeping the spine straight.",
    "heatstroke": "Move the animal to shade and cool it with lukewarm water.",
    "broken": "Do not try to set the bone; keep the animal still.",
}

DEFAULT_GUIDANCE = "Keep the animal calm and warm while help is on the way."


class KeywordSeverityScorer:
    """Rough severity estimate from the case description."""

    @staticmethod
    def tokenize(text: str) -> List[str]:
        clean = "".join(ch.lower() if ch.isalnum() or ch.isspace() else " " for ch in text)
        return [t for t in clean.split() if t]

    @staticmethod
    def _matches(signals: Iterable[str], tokens: List[str]) -> List[str]:
        token_set = set(tokens)
        joined_text = " ".join(tokens)
        found = []
        for signal in signals:
            if (" " in signal and signal in joined_text) or signal in token_set:
                found.append(signal)
        return sorted(found)

    def severity(self, text: str) -> tuple[str, List[str]]:
        tokens = self.tokenize(text)
        critical = self._matches(SEVERITY_SIGNALS["critical"], tokens)
        high = self._matches(SEVERITY_SIGNALS["high"], tokens)
        moderate = self._matches(SEVERITY_SIGNALS["moderate"], tokens)

        if critical:
            return "critical", critical + high
        if len(high) >= 2:
            return "critical", high
        if high:
            return "high", high + moderate
        if moderate:
            return "medium", moderate
        return "low", []

    def __call__(self, case: DistressCase) -> Advisory:
        label, signals = self.severity(case.description)
        guidance = [GUIDANCE[signal] for signal in signals if signal in GUIDANCE]
        guidance.append(DEFAULT_GUIDANCE)
        return Advisory(severity=label, guidance=guidance)
