"""
CRUD operations for grocery lists.
"""
import json
import uuid
from typing import List, Optional
from sqlalchemy.orm import Session
from pydantic import BaseModel
from mealwise.db.models import GroceryListModel
from mealwise.db.base_crud import CRUDBase
from mealwise.db.schema import GroceryItem, GroceryItemDraft, GroceryList, LocationInfo


class GroceryListCreate(BaseModel):
    meal_plan_id: str
    user_id: Optional[str] = None


class CRUDGroceryList(CRUDBase[GroceryListModel, GroceryListCreate, GroceryListCreate]):
    def create_with_items(
        self,
        db: Session,
        obj_in: GroceryListCreate,
        items: List[GroceryItemDraft],
        location_info: LocationInfo
    ) -> GroceryListModel:
        """
        Store a grocery list, giving every item its own id.
        """
        stored_items = [
            GroceryItem(id=str(uuid.uuid4()), **item.model_dump()).model_dump()
            for item in items
        ]
        grocery_list = GroceryListModel(
            id=str(uuid.uuid4()),
            meal_plan_id=obj_in.meal_plan_id,
            user_id=obj_in.user_id,
            items=json.dumps(stored_items),
            location_info=location_info.model_dump_json()
        )
        db.add(grocery_list)
        db.commit()
        db.refresh(grocery_list)
        return grocery_list

    def get_latest_for_plan(self, db: Session, meal_plan_id: str) -> Optional[GroceryListModel]:
        return db.query(GroceryListModel).filter(
            GroceryListModel.meal_plan_id == meal_plan_id
        ).order_by(GroceryListModel.created_at.desc()).first()


def to_schema(grocery_list: GroceryListModel) -> GroceryList:
    """Convert a stored grocery list to its pydantic representation."""
    location = json.loads(grocery_list.location_info) if grocery_list.location_info else {}
    return GroceryList(
        id=grocery_list.id,
        meal_plan_id=grocery_list.meal_plan_id,
        items=[GroceryItem(**item) for item in json.loads(grocery_list.items)],
        location_info=LocationInfo(**location),
        created_at=grocery_list.created_at
    )


grocery_list = CRUDGroceryList(GroceryListModel)
