"""
Store-scoped inventory.

Models:
- InventoryStock (one stock record per item per store, optimistic-lock `version`)
- ConversionMapping (recipe ingredient name/unit -> stock record + conversion factor)
- InventoryMovement (append-only ledger; previous + change == new)
- DeductionIdempotency (one immutable row per attempted ingredient deduction)
- CompensationLog (reversals applied to undo an already-applied deduction)
"""
