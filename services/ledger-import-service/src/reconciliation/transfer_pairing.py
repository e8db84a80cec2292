from __future__ import annotations

from collections.abc import Sequence

from models.import_rows import NormalizedRow, TransferPair, TransferPairing, UnpairedTransferLeg

SAME_SIGN_REASON = "transfer pair has same sign amounts"
NOT_FOUND_REASON = "transfer pair not found"


def pair_transfer_legs(rows: Sequence[NormalizedRow]) -> TransferPairing:
    """
    Match transfer legs the same way the ledger backend does before inserting them.

    Two legs belong together when they carry the same date and each names the other's
    account as its transfer counterpart. Matching is greedy in row order. The negative leg
    becomes the source; pairs whose amounts share a sign are reported instead of paired.
    """

    candidates = [row for row in rows if row.row_type == "transfer" and row.error_reason is None]
    matched = [False] * len(candidates)
    pairing = TransferPairing()

    for i, leg in enumerate(candidates):
        if matched[i]:
            continue

        partner_index = _find_partner(candidates, matched, i)
        if partner_index is None:
            pairing.unpaired.append(UnpairedTransferLeg(row_number=leg.row_number, reason=NOT_FOUND_REASON))
            continue

        matched[i] = True
        matched[partner_index] = True
        partner = candidates[partner_index]

        leg_negative = _amount(leg) < 0
        partner_negative = _amount(partner) < 0
        if leg_negative == partner_negative:
            pairing.unpaired.append(UnpairedTransferLeg(row_number=leg.row_number, reason=SAME_SIGN_REASON))
            pairing.unpaired.append(UnpairedTransferLeg(row_number=partner.row_number, reason=SAME_SIGN_REASON))
            continue

        source, dest = (partner, leg) if partner_negative else (leg, partner)
        pairing.pairs.append(TransferPair(source=source, dest=dest))

    pairing.unpaired.sort(key=lambda unpaired: unpaired.row_number)
    return pairing


def _find_partner(candidates: Sequence[NormalizedRow], matched: list[bool], index: int) -> int | None:
    leg = candidates[index].raw
    for j in range(index + 1, len(candidates)):
        if matched[j]:
            continue
        other = candidates[j].raw
        if leg.date == other.date and leg.account == other.transfer and leg.transfer == other.account:
            return j
    return None


def _amount(row: NormalizedRow) -> float:
    # Error-free rows always carry a parsed amount.
    return row.parsed_amount if row.parsed_amount is not None else 0.0
