"""
CRUD operations for meal plans.
"""
import json
import uuid
from typing import List, Optional
from sqlalchemy.orm import Session
from pydantic import BaseModel
from mealwise.db.models import MealPlanModel, utcnow
from mealwise.db.base_crud import CRUDBase
from mealwise.db.schema import Meal, MealPlan, MealPlanDay


class MealPlanCreate(BaseModel):
    title: str
    duration: int
    meals_per_day: int
    user_id: Optional[str] = None


class CRUDMealPlan(CRUDBase[MealPlanModel, MealPlanCreate, MealPlanCreate]):
    def create_with_days(
        self,
        db: Session,
        obj_in: MealPlanCreate,
        days: List[MealPlanDay]
    ) -> MealPlanModel:
        """
        Store a new meal plan with its days serialized as JSON.
        """
        plan = MealPlanModel(
            id=str(uuid.uuid4()),
            user_id=obj_in.user_id,
            title=obj_in.title,
            duration=obj_in.duration,
            meals_per_day=obj_in.meals_per_day,
            days=json.dumps([day.model_dump() for day in days])
        )
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    def replace_meal(
        self,
        db: Session,
        plan_id: str,
        day: int,
        meal_index: int,
        new_meal: Meal
    ) -> Optional[MealPlanModel]:
        """
        Overwrite one meal of a stored plan. Returns None if the plan is gone.
        """
        plan = self.get(db, plan_id)
        if plan is None:
            return None

        days = json.loads(plan.days)
        for entry in days:
            if entry.get("day") == day:
                entry["meals"][meal_index] = new_meal.model_dump()
                break
        else:
            raise IndexError(f"Day {day} not found in meal plan {plan_id}")

        plan.days = json.dumps(days)
        plan.updated_at = utcnow()
        db.commit()
        db.refresh(plan)
        return plan


def to_schema(plan: MealPlanModel) -> MealPlan:
    """Convert a stored plan to its pydantic representation."""
    return MealPlan(
        id=plan.id,
        user_id=plan.user_id,
        title=plan.title,
        duration=plan.duration,
        meals_per_day=plan.meals_per_day,
        days=[MealPlanDay(**day) for day in json.loads(plan.days)],
        created_at=plan.created_at
    )


meal_plan = CRUDMealPlan(MealPlanModel)
